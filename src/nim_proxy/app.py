from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from . import __version__
from .config import ProxyConfig
from .errors import (
    ProxyError,
    err_internal,
    err_invalid_json,
    err_payload_too_large,
    err_route_not_found,
)
from .forwarder import ChatForwarder
from .logging_utils import JsonlLogger

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("nim_proxy.access")


class AccessLogMiddleware:
    """Emit one structured record per request: timestamp, method, path, status."""

    def __init__(self, app: ASGIApp, jsonl: Optional[JsonlLogger] = None):
        self.app = app
        self.jsonl = jsonl

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.time()
        record: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "method": scope["method"],
            "path": scope["path"],
            "status": 500,
        }
        access_logger.info("[%s] %s %s", record["ts"], record["method"], record["path"])

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                record["status"] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            record["duration_ms"] = round((time.time() - started) * 1000, 1)
            if self.jsonl is not None:
                self.jsonl.log(record)


class InternalErrorMiddleware:
    """Render unexpected failures as the generic 500 envelope.

    Registered beneath CORSMiddleware so the reply still carries CORS headers.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            logger.exception(
                "[app] Unhandled error on %s %s", scope["method"], scope["path"]
            )
            if response_started:
                raise
            err = err_internal()
            response = JSONResponse(status_code=err.status_code, content=err.detail)
            await response(scope, receive, send)


async def _read_json_body(req: Request, limit: int) -> Any:
    declared = req.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise err_payload_too_large(limit)
    chunks: list[bytes] = []
    size = 0
    async for chunk in req.stream():
        size += len(chunk)
        if size > limit:
            raise err_payload_too_large(limit)
        chunks.append(chunk)
    raw = b"".join(chunks)
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise err_invalid_json(str(exc)) from exc


def create_app(
    cfg: ProxyConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> FastAPI:
    """Build the proxy application around an already-resolved configuration."""

    forwarder = ChatForwarder(cfg, transport=transport)
    jsonl = JsonlLogger(cfg.log_path, cfg.max_log_bytes) if cfg.log_path else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("[app] Proxy server running on %s:%d", cfg.host, cfg.port)
        logger.info("[app] API key configured: %s", "yes" if cfg.api_key else "no")
        logger.info("[app] Base URL: %s", cfg.base_url)
        logger.info("[app] Environment: %s", cfg.environment)
        yield
        await forwarder.aclose()
        logger.info("[app] Upstream client closed")

    app = FastAPI(title="NVIDIA NIM Proxy", version=__version__, lifespan=lifespan)
    app.state.cfg = cfg
    app.state.forwarder = forwarder

    # Added first runs innermost: CORS -> access log -> internal error -> routes.
    app.add_middleware(InternalErrorMiddleware)
    app.add_middleware(AccessLogMiddleware, jsonl=jsonl)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.allowed_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
        max_age=3600,
    )

    @app.exception_handler(ProxyError)
    async def _proxy_error_handler(request: Request, exc: ProxyError):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            err = err_route_not_found(request.method, request.url.path)
            return JSONResponse(status_code=err.status_code, content=err.detail)
        err_type = "invalid_request_error" if exc.status_code < 500 else "server_error"
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"message": str(exc.detail), "type": err_type}},
            headers=getattr(exc, "headers", None),
        )

    @app.get("/")
    async def root():
        return {
            "status": "running",
            "message": "NVIDIA NIM Proxy Server",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/v1/chat/completions")
    async def chat_completions(req: Request):
        payload = await _read_json_body(req, cfg.max_body_bytes)
        return await forwarder.handle_chat(payload)

    @app.get("/v1/models")
    async def list_models_api():
        return JSONResponse(content=await forwarder.list_models())

    return app
