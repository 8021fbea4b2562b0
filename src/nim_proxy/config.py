from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

DEFAULT_BASE_URL = "https://integrate.api.nvidia.com/v1"
DEFAULT_MODEL = "deepseek-ai/deepseek-r1-0528"


@dataclass(frozen=True)
class ProxyConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "production"
    api_key: str = field(default="", repr=False)
    base_url: str = DEFAULT_BASE_URL
    default_model: str = DEFAULT_MODEL
    default_temperature: float = 0.7
    default_max_tokens: int = 4096
    backend_timeout_ms: int = 120_000
    models_timeout_ms: int = 10_000
    stream_idle_timeout_ms: int = 120_000
    stream_buffer_chunks: int = 16
    max_body_bytes: int = 10 * 1024 * 1024
    allowed_origins: Tuple[str, ...] = ("*",)
    log_dir: Optional[str] = None
    log_level: str = "INFO"
    log_path: Optional[str] = None
    max_log_bytes: int = 25_000_000
    config_file_path: Optional[str] = None

    @property
    def include_error_details(self) -> bool:
        return self.environment.lower() != "production"

    @property
    def chat_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"

    @property
    def models_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/models"
