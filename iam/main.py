"""FastAPI application factory."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from iam.config import configure_structlog, get_settings
from iam.core.locks import get_redis_client
from iam.db.session import dispose_engine
from iam.error_handlers import register_exception_handlers
from iam.middleware import (
    CorrelationIdMiddleware,
    LoggingMiddleware,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
)
from iam.routers import auth, external_links, health, sessions, users


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    await get_redis_client().aclose()
    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_structlog(settings)

    app = FastAPI(title=settings.app.service, lifespan=_lifespan)
    register_exception_handlers(app, environment=settings.app.environment)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(auth.router)
    app.include_router(external_links.router)
    app.include_router(sessions.router)
    app.include_router(users.router)
    app.include_router(health.router)
    return app


app = create_app()
