"""Redis-backed sliding-window rate limiting middleware."""

from __future__ import annotations

import time
from typing import Protocol
from uuid import uuid4

import structlog
from fastapi import Request
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from iam.config import get_settings
from iam.core.locks import get_redis_client
from iam.dependencies import extract_client_ip
from iam.error_handlers import envelope_response

logger = structlog.get_logger(__name__)
_WINDOW_SECONDS = 60
LOGIN_PATH = "/api/authentications/login"
REFRESH_PATH = "/api/authentications/refresh"


class SlidingWindowRedis(Protocol):
    """Redis sorted-set operations used by the limiter."""

    async def zremrangebyscore(self, key: str, min: str | int, max: int) -> int: ...

    async def zcard(self, key: str) -> int: ...

    async def zadd(self, key: str, mapping: dict[str, int]) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client, per-path request limits with tighter login and refresh limits."""

    def __init__(
        self,
        app,
        redis_client: SlidingWindowRedis | None = None,
        limits: dict[str, int] | None = None,
        default_limit: int | None = None,
    ) -> None:
        """Initialize with explicit limits for tests, else from settings."""
        super().__init__(app)
        if limits is None or default_limit is None:
            settings = get_settings().rate_limit
            limits = limits or {
                LOGIN_PATH: settings.login_requests_per_minute,
                REFRESH_PATH: settings.refresh_requests_per_minute,
            }
            default_limit = default_limit or settings.default_requests_per_minute
        self._redis = redis_client or get_redis_client()
        self._limits = limits
        self._default_limit = default_limit

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        limit = self._limits.get(path, self._default_limit)
        key = f"rate_limit:{path}:{extract_client_ip(request)}"
        now_ms = int(time.time() * 1000)

        try:
            await self._redis.zremrangebyscore(key, "-inf", now_ms - _WINDOW_SECONDS * 1000)
            if await self._redis.zcard(key) >= limit:
                response = envelope_response(
                    status_code=429, success=False, message="Rate limit exceeded."
                )
                response.headers["Retry-After"] = str(_WINDOW_SECONDS)
                return response
            await self._redis.zadd(key, {f"{now_ms}:{uuid4()}": now_ms})
            await self._redis.expire(key, _WINDOW_SECONDS + 1)
        except RedisError:
            logger.warning("rate_limit_backend_unavailable", path=path, method=request.method)

        return await call_next(request)
