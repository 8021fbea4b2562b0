from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class ProxyError(HTTPException):
    def __init__(
        self,
        status_code: int,
        err_type: str,
        message: str,
        code: str | None = None,
        param: str | None = None,
        details: Any = None,
    ):
        error: dict[str, Any] = {"message": message, "type": err_type}
        if code is not None:
            error["code"] = code
        if param is not None:
            error["param"] = param
        if details is not None:
            error["details"] = details
        super().__init__(status_code=status_code, detail={"error": error})


def err_invalid_json(reason: str) -> ProxyError:
    return ProxyError(
        400,
        "invalid_request_error",
        f"Request body must be a JSON object: {reason}",
        code="invalid_json",
    )


def err_payload_too_large(limit: int) -> ProxyError:
    return ProxyError(
        413,
        "invalid_request_error",
        f"Request body exceeds limit {limit} bytes",
        code="payload_too_large",
    )


def err_invalid_messages() -> ProxyError:
    return ProxyError(
        400,
        "invalid_request_error",
        "messages field is required and must be a non-empty array",
        code="invalid_messages",
        param="messages",
    )


def err_invalid_message(index: int) -> ProxyError:
    return ProxyError(
        400,
        "invalid_request_error",
        f"Message at index {index} must have 'role' and 'content' fields",
        code="invalid_message",
        param=f"messages[{index}]",
    )


def err_invalid_parameter(param: str, reason: str) -> ProxyError:
    return ProxyError(
        400,
        "invalid_request_error",
        f"Invalid value for '{param}': {reason}",
        code="invalid_parameter",
        param=param,
    )


def err_timeout() -> ProxyError:
    return ProxyError(
        504,
        "timeout_error",
        "Request timeout - the API took too long to respond",
        code="request_timeout",
    )


def err_service_unavailable() -> ProxyError:
    return ProxyError(
        503,
        "service_unavailable",
        "Unable to connect to NVIDIA API",
        code="service_unavailable",
    )


def err_upstream(
    status_code: int | None,
    body: Any,
    fallback_message: str,
    *,
    include_details: bool = False,
) -> ProxyError:
    """Reshape an upstream failure, preferring the fields upstream supplied."""

    upstream_error: dict[str, Any] = {}
    if isinstance(body, dict):
        nested = body.get("error")
        if isinstance(nested, dict):
            upstream_error = nested
        elif isinstance(nested, str):
            upstream_error = {"message": nested}
    message = (
        upstream_error.get("message")
        or (body.get("message") if isinstance(body, dict) else None)
        or fallback_message
    )
    return ProxyError(
        status_code or 500,
        upstream_error.get("type") or "proxy_error",
        str(message),
        code=str(upstream_error.get("code") or "unknown_error"),
        details=body if include_details else None,
    )


def err_route_not_found(method: str, path: str) -> ProxyError:
    return ProxyError(
        404,
        "invalid_request_error",
        f"Route {method} {path} not found",
        code="route_not_found",
    )


def err_internal() -> ProxyError:
    return ProxyError(
        500, "server_error", "Internal server error", code="internal_error"
    )
