"""Structured request logging middleware with credential redaction."""

from __future__ import annotations

from time import perf_counter
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from iam.dependencies import extract_client_ip

# OAuth callback values are single-use credentials too.
SENSITIVE_KEYS = frozenset(
    {"authorization", "code", "cookie", "password", "secret", "set_cookie", "state", "token"}
)
REDACTED = "***REDACTED***"

logger = structlog.get_logger(__name__)


def is_sensitive_key(key: str) -> bool:
    """Return True when a key likely carries credential material."""
    normalized = key.lower().replace("-", "_")
    if normalized in SENSITIVE_KEYS:
        return True
    return any(marker in normalized for marker in ("token", "password", "secret"))


def redact(values: Any) -> Any:
    """Recursively replace credential-bearing values."""
    if isinstance(values, dict):
        return {
            key: REDACTED if is_sensitive_key(str(key)) else redact(value)
            for key, value in values.items()
        }
    if isinstance(values, list):
        return [redact(item) for item in values]
    return values


class LoggingMiddleware(BaseHTTPMiddleware):
    """Emit one `request_completed` event per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        started = perf_counter()
        fields = {
            "method": request.method,
            "path": request.url.path,
            "query_params": redact(dict(request.query_params)),
            "client_ip": extract_client_ip(request),
            "user_agent": request.headers.get("user-agent", ""),
        }

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_completed",
                status_code=500,
                duration_ms=round((perf_counter() - started) * 1000, 2),
                **fields,
            )
            raise

        log = logger.warning if response.status_code >= 400 else logger.info
        log(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((perf_counter() - started) * 1000, 2),
            **fields,
        )
        return response
