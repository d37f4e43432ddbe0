"""Single-flight locking for external token refresh."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from functools import lru_cache
from typing import Protocol
from uuid import UUID

import structlog
from redis import asyncio as redis_async
from redis.asyncio.client import Redis
from redis.exceptions import LockError, RedisError

from iam.config import get_settings

logger = structlog.get_logger(__name__)


class RefreshLock(Protocol):
    """Mutual exclusion around the read-check-refresh-write sequence."""

    def hold(self, user_id: UUID, provider: str) -> AbstractAsyncContextManager[None]: ...


class RedisRefreshLock:
    """Redis lock keyed by (user, provider).

    When Redis cannot be reached the caller proceeds unlocked.
    """

    def __init__(self, redis_client: Redis, timeout_seconds: int) -> None:
        self._redis = redis_client
        self._timeout_seconds = timeout_seconds

    @staticmethod
    def lock_key(user_id: UUID, provider: str) -> str:
        return f"external_token_refresh:{user_id}:{provider}"

    @asynccontextmanager
    async def hold(self, user_id: UUID, provider: str) -> AsyncIterator[None]:
        """Hold the refresh lock for the duration of the block."""
        key = self.lock_key(user_id, provider)
        lock = self._redis.lock(
            key,
            timeout=self._timeout_seconds,
            blocking_timeout=self._timeout_seconds,
        )
        acquired = False
        try:
            acquired = bool(await lock.acquire())
        except RedisError:
            logger.warning("refresh_lock_backend_unavailable", lock_key=key)
        else:
            if not acquired:
                logger.warning("refresh_lock_wait_timed_out", lock_key=key)
        try:
            yield
        finally:
            if acquired:
                try:
                    await lock.release()
                except (LockError, RedisError):
                    logger.warning("refresh_lock_release_failed", lock_key=key)


@lru_cache
def get_redis_client() -> Redis:
    """Create and cache Redis client shared by locking and readiness checks."""
    settings = get_settings()
    return redis_async.from_url(settings.redis.url, decode_responses=True)


@lru_cache
def get_refresh_lock() -> RefreshLock:
    """Create and cache the external token refresh lock."""
    settings = get_settings()
    return RedisRefreshLock(
        redis_client=get_redis_client(),
        timeout_seconds=settings.external_link.refresh_lock_timeout_seconds,
    )
