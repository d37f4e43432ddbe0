"""Shared integration-test fixtures using Postgres and Redis testcontainers.

Router tests wired to in-memory collaborators need none of these; the
container fixtures start only when a `*_real` test requests them.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from docker.errors import DockerException


def _clear_dependency_caches() -> None:
    """Clear every lru-cached dependency between test phases."""
    from iam.config import get_settings
    from iam.core.jwt import get_access_token_issuer
    from iam.core.link_state import get_link_state_service
    from iam.core.locks import get_redis_client, get_refresh_lock
    from iam.core.oauth import get_google_oauth_client
    from iam.core.sessions import get_session_service
    from iam.core.token_protector import get_token_protector
    from iam.db.session import get_engine, get_session_factory
    from iam.services.auth_service import get_auth_service
    from iam.services.external_link_service import get_external_link_service

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    get_redis_client.cache_clear()
    get_refresh_lock.cache_clear()
    get_access_token_issuer.cache_clear()
    get_session_service.cache_clear()
    get_link_state_service.cache_clear()
    get_token_protector.cache_clear()
    get_google_oauth_client.cache_clear()
    get_auth_service.cache_clear()
    get_external_link_service.cache_clear()


async def _dispose_async_singletons() -> None:
    """Dispose loop-bound async resources before changing event loops."""
    from iam.core.locks import get_redis_client
    from iam.db.session import dispose_engine, get_engine

    if get_redis_client.cache_info().currsize:
        await get_redis_client().aclose()
    if get_engine.cache_info().currsize:
        await dispose_engine()


def _postgres_async_url(postgres: PostgresContainer) -> str:
    """Return a postgresql+asyncpg URL across testcontainers versions."""
    try:
        postgres_url = postgres.get_connection_url(driver=None)
    except TypeError:
        postgres_url = postgres.get_connection_url()

    if postgres_url.startswith("postgresql+"):
        postgres_url = "postgresql://" + postgres_url.split("://", 1)[1]

    return postgres_url.replace("postgresql://", "postgresql+asyncpg://", 1)


def _redis_connection_url(redis: RedisContainer) -> str:
    """Return a redis:// URL for the container."""
    host = redis.get_container_host_ip()
    port = redis.get_exposed_port(6379)
    return f"redis://{host}:{port}/0"


@pytest.fixture(scope="session")
def integration_env() -> Iterator[dict[str, str]]:
    """Start Postgres/Redis containers and configure settings for real-backend tests."""
    try:
        postgres = PostgresContainer("postgres:16")
        redis = RedisContainer("redis:7")
        postgres.start()
        redis.start()
    except DockerException as exc:
        if os.environ.get("CI", "").lower() in {"1", "true", "yes"}:
            pytest.fail(f"Docker daemon unavailable in CI for integration tests: {exc}")
        pytest.skip(f"Docker daemon unavailable for integration tests: {exc}")

    database_url = _postgres_async_url(postgres)
    env_values = {
        "APP__ENVIRONMENT": "development",
        "APP__SERVICE": "iam-service",
        "DATABASE__URL": database_url,
        "REDIS__URL": _redis_connection_url(redis),
        "JWT__ISSUER": "iam-integration",
        "JWT__AUDIENCE": "iam-integration-clients",
        "JWT__SIGNING_KEY": "integration-signing-key-with-enough-entropy",
        "JWT__EXPIRY_MINUTES": "15",
        "EXTERNAL_LINK__STATE_SIGNING_KEY": "integration-state-key",
        "TOKEN_PROTECTION__ENCRYPTION_KEY": "integration-token-protection-key",
        "OAUTH__GOOGLE_CLIENT_ID": "integration-google-client-id",
        "OAUTH__GOOGLE_CLIENT_SECRET": "integration-google-client-secret",
        "OAUTH__GOOGLE_REDIRECT_URI": "http://localhost:8000/link/google/callback",
        "RATE_LIMIT__DEFAULT_REQUESTS_PER_MINUTE": "10000",
        "RATE_LIMIT__LOGIN_REQUESTS_PER_MINUTE": "10000",
        "RATE_LIMIT__REFRESH_REQUESTS_PER_MINUTE": "10000",
    }
    monkeypatch = pytest.MonkeyPatch()
    for key, value in env_values.items():
        monkeypatch.setenv(key, value)
    _clear_dependency_caches()

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")

    try:
        yield env_values
    finally:
        try:
            _clear_dependency_caches()
        finally:
            monkeypatch.undo()
            postgres.stop()
            redis.stop()


@pytest.fixture(scope="function")
async def reset_state(integration_env: dict[str, str]) -> AsyncIterator[None]:
    """Clear tables and flush Redis; isolate async singletons per event loop."""
    del integration_env
    from iam.core.locks import get_redis_client
    from iam.db.session import get_session_factory
    from iam.models import (
        ExternalIdentity,
        ExternalToken,
        LoginAttempt,
        Role,
        Session,
        User,
        UserRole,
    )

    await _dispose_async_singletons()
    _clear_dependency_caches()

    async with get_session_factory()() as session:
        for model in (
            ExternalToken,
            ExternalIdentity,
            LoginAttempt,
            Session,
            UserRole,
            Role,
            User,
        ):
            await session.execute(delete(model))
        await session.commit()

    await get_redis_client().flushdb()
    try:
        yield
    finally:
        await _dispose_async_singletons()
        _clear_dependency_caches()


@pytest.fixture(scope="function")
async def db_session_factory(reset_state: None) -> async_sessionmaker[AsyncSession]:
    """Expose async session factory bound to integration Postgres."""
    del reset_state
    from iam.db.session import get_session_factory

    return get_session_factory()


@pytest.fixture(scope="function")
async def db_session(
    db_session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Yield a write-capable async DB session for seeding and assertions."""
    async with db_session_factory() as session:
        yield session


@pytest.fixture(scope="function")
def app_factory(reset_state: None) -> Callable[[], Any]:
    """Build isolated FastAPI app instances for integration tests."""
    del reset_state
    from iam.main import create_app

    return create_app
