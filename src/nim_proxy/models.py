from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import ProxyConfig

# Sampling parameters forwarded only when the caller sent them.
OPTIONAL_SAMPLING_FIELDS = ("top_p", "frequency_penalty", "presence_penalty")

FALLBACK_MODEL_IDS = ("deepseek-ai/deepseek-r1-0528", "deepseek-ai/deepseek-v3.1")


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Any  # str, or a list of parts for multimodal models


class ChatCompletionRequest(BaseModel):
    """Inbound OpenAI-style request; unknown top-level keys are dropped."""

    model_config = ConfigDict(extra="ignore")

    model: Optional[str] = None
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: Optional[bool] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None

    def to_upstream(self, cfg: ProxyConfig) -> "UpstreamChatRequest":
        optional = {
            name: getattr(self, name)
            for name in OPTIONAL_SAMPLING_FIELDS
            if name in self.model_fields_set and getattr(self, name) is not None
        }
        return UpstreamChatRequest(
            model=self.model or cfg.default_model,
            messages=[m.model_dump() for m in self.messages],
            temperature=(
                self.temperature
                if self.temperature is not None
                else cfg.default_temperature
            ),
            max_tokens=self.max_tokens or cfg.default_max_tokens,
            stream=bool(self.stream),
            **optional,
        )


class UpstreamChatRequest(BaseModel):
    model: str
    messages: List[Dict[str, Any]]
    temperature: float
    max_tokens: int
    stream: bool = False
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class ModelCard(BaseModel):
    id: str
    object: str = "model"
    created: int = Field(default_factory=lambda: int(time.time()))
    owned_by: str = "nvidia"


class ModelList(BaseModel):
    object: str = "list"
    data: List[ModelCard]


def fallback_model_list() -> Dict[str, Any]:
    return ModelList(data=[ModelCard(id=mid) for mid in FALLBACK_MODEL_IDS]).model_dump()
