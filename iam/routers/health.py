"""Health check router endpoints."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from iam.core.locks import get_redis_client
from iam.core.results import ServiceResult
from iam.db.session import get_engine
from iam.error_handlers import to_response

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


async def check_postgres_ready() -> bool:
    """Return True when Postgres accepts a lightweight query."""
    try:
        async with get_engine().connect() as connection:
            await connection.execute(select(1))
        return True
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("postgres_not_ready", error=type(exc).__name__)
        return False


async def check_redis_ready() -> bool:
    """Return True when Redis responds to PING."""
    try:
        return bool(await get_redis_client().ping())
    except (RedisError, OSError) as exc:
        logger.warning("redis_not_ready", error=type(exc).__name__)
        return False


@router.get("/live")
async def live() -> JSONResponse:
    """Liveness probe endpoint."""
    return to_response(ServiceResult.ok({"status": "live"}))


@router.get("/ready")
async def ready(
    postgres_ready: Annotated[bool, Depends(check_postgres_ready)],
    redis_ready: Annotated[bool, Depends(check_redis_ready)],
) -> JSONResponse:
    """Readiness probe requiring both Postgres and Redis."""
    if not postgres_ready or not redis_ready:
        raise HTTPException(status_code=503, detail="Service not ready.")
    return to_response(ServiceResult.ok({"status": "ready"}))
