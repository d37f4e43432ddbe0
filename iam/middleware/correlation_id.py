"""Correlation ID middleware."""

from __future__ import annotations

from uuid import uuid4

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

CORRELATION_ID_HEADER = "X-Correlation-ID"
_MAX_INBOUND_LENGTH = 128


def _resolve_correlation_id(raw_value: str) -> str:
    """Accept a caller-supplied id when printable and bounded, else mint one."""
    candidate = raw_value.strip()
    if candidate and len(candidate) <= _MAX_INBOUND_LENGTH and candidate.isprintable():
        return candidate
    return str(uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind a per-request correlation id to structlog context and echo it back."""

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = _resolve_correlation_id(request.headers.get(CORRELATION_ID_HEADER, ""))
        request.state.correlation_id = correlation_id
        with structlog.contextvars.bound_contextvars(correlation_id=correlation_id):
            response = await call_next(request)
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
