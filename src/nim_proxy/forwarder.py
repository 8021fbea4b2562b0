from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError
from starlette.responses import Response

from .config import ProxyConfig
from .errors import (
    ProxyError,
    err_invalid_json,
    err_invalid_message,
    err_invalid_messages,
    err_invalid_parameter,
    err_service_unavailable,
    err_timeout,
    err_upstream,
)
from .models import ChatCompletionRequest, fallback_model_list
from .relay import RelayStreamingResponse, StreamRelay

logger = logging.getLogger(__name__)


def map_transport_error(exc: httpx.HTTPError) -> ProxyError:
    """Translate an httpx failure that produced no upstream response."""

    # ConnectTimeout is a TimeoutException, so timeouts are checked first.
    if isinstance(exc, httpx.TimeoutException):
        return err_timeout()
    if isinstance(exc, httpx.ConnectError):
        # Covers both refused connections and unresolvable hosts.
        return err_service_unavailable()
    return err_upstream(None, None, str(exc) or type(exc).__name__)


def _decode_body(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode(errors="replace")[:2000]


def _blank(value: Any) -> bool:
    # Containers count as present even when empty; content may be a parts list.
    if isinstance(value, (list, dict)):
        return False
    return not value


async def _discard(resp: Optional[httpx.Response]) -> None:
    if resp is not None:
        await resp.aclose()


class ChatForwarder:
    def __init__(
        self,
        cfg: ProxyConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cfg = cfg
        self.client = httpx.AsyncClient(
            timeout=cfg.backend_timeout_ms / 1000,
            headers={"Authorization": f"Bearer {cfg.api_key}"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    @staticmethod
    def parse_request(payload: Any) -> ChatCompletionRequest:
        if not isinstance(payload, dict):
            raise err_invalid_json("expected an object")
        messages = payload.get("messages")
        if not isinstance(messages, list) or not messages:
            raise err_invalid_messages()
        for index, message in enumerate(messages):
            if (
                not isinstance(message, dict)
                or _blank(message.get("role"))
                or _blank(message.get("content"))
            ):
                raise err_invalid_message(index)
        try:
            return ChatCompletionRequest.model_validate(payload)
        except ValidationError as exc:
            first = exc.errors()[0]
            param = ".".join(str(part) for part in first.get("loc", ())) or "body"
            raise err_invalid_parameter(param, first.get("msg", "invalid")) from exc

    def build_upstream_payload(self, request: ChatCompletionRequest) -> Dict[str, Any]:
        return request.to_upstream(self.cfg).payload()

    async def handle_chat(self, payload: Any) -> Response:
        request = self.parse_request(payload)
        body = self.build_upstream_payload(request)
        stream = body["stream"]
        logger.info(
            "[forwarder] Request received for model: %s (stream=%s)",
            request.model or "default",
            stream,
        )

        upstream_req = self.client.build_request(
            "POST",
            self.cfg.chat_url,
            json=body,
            headers={
                "Content-Type": "application/json",
                "Accept": "text/event-stream" if stream else "application/json",
            },
        )
        deadline_s = self.cfg.backend_timeout_ms / 1000
        resp: Optional[httpx.Response] = None
        relaying = False
        try:
            # One deadline covers the headers and, for buffered replies, the body.
            async with asyncio.timeout(deadline_s):
                resp = await self.client.send(upstream_req, stream=True)
                relaying = stream and resp.status_code < 400
                if not relaying:
                    raw = await resp.aread()
        except TimeoutError as exc:
            await _discard(resp)
            logger.error(
                "[forwarder] Upstream did not answer within %d ms",
                self.cfg.backend_timeout_ms,
            )
            raise err_timeout() from exc
        except httpx.HTTPError as exc:
            await _discard(resp)
            logger.error("[forwarder] Upstream request failed: %r", exc)
            raise map_transport_error(exc) from exc

        if relaying:
            idle_ms = self.cfg.stream_idle_timeout_ms
            relay = StreamRelay(
                resp,
                max_chunks=self.cfg.stream_buffer_chunks,
                idle_timeout_s=idle_ms / 1000 if idle_ms > 0 else None,
            )
            return RelayStreamingResponse(relay, status_code=resp.status_code)
        await resp.aclose()

        if resp.status_code >= 500:
            data = _decode_body(raw)
            logger.error(
                "[forwarder] Upstream returned %d: %s", resp.status_code, data
            )
            raise err_upstream(
                resp.status_code,
                data,
                f"Request failed with status code {resp.status_code}",
                include_details=self.cfg.include_error_details,
            )
        if resp.status_code >= 400:
            logger.warning(
                "[forwarder] Relaying upstream client error %d", resp.status_code
            )
            return Response(
                content=raw,
                status_code=resp.status_code,
                media_type=resp.headers.get("content-type", "application/json"),
            )
        try:
            json.loads(raw)
        except ValueError as exc:
            raise err_upstream(
                502,
                _decode_body(raw),
                "Upstream returned a non-JSON response",
                include_details=self.cfg.include_error_details,
            ) from exc
        return Response(
            content=raw, status_code=resp.status_code, media_type="application/json"
        )

    async def list_models(self) -> Dict[str, Any]:
        try:
            resp = await self.client.get(
                self.cfg.models_url, timeout=self.cfg.models_timeout_ms / 1000
            )
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "[forwarder] Failed to fetch models from upstream, using fallback: %s",
                exc,
            )
            return fallback_model_list()
