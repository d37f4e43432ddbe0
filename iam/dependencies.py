"""Shared FastAPI dependency helpers."""

from collections.abc import AsyncGenerator, Callable
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from iam.core.jwt import (
    AccessTokenClaims,
    AccessTokenIssuer,
    TokenValidationError,
    get_access_token_issuer,
)
from iam.core.results import Outcome, ServiceError
from iam.core.sessions import ClientInfo
from iam.db.session import get_db_session
from iam.db.store import IdentityStore


async def get_database_session() -> AsyncGenerator[AsyncSession, None]:
    """Expose the request-scoped async database session dependency."""
    async for session in get_db_session():
        yield session


async def get_identity_store(
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
) -> IdentityStore:
    """Wrap the request session in the identity store gateway."""
    return IdentityStore(db_session)


def extract_client_ip(request: Request) -> str:
    """Extract client IP using forwarding headers when present."""
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    client = request.client
    return client.host if client else "unknown"


def get_client_info(request: Request) -> ClientInfo:
    """Collect client metadata recorded on sessions and login attempts."""
    user_agent = request.headers.get("user-agent", "").strip()
    return ClientInfo(
        ip_address=extract_client_ip(request),
        user_agent=user_agent[:512] or None,
    )


def _extract_bearer_token(request: Request) -> str | None:
    """Extract bearer token from Authorization header."""
    authorization = request.headers.get("authorization", "").strip()
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    cleaned = token.strip()
    return cleaned or None


async def get_current_principal(
    request: Request,
    token_issuer: Annotated[AccessTokenIssuer, Depends(get_access_token_issuer)],
) -> AccessTokenClaims:
    """Resolve the authenticated caller from a bearer access token."""
    token = _extract_bearer_token(request)
    if token is None:
        raise ServiceError.unauthorized()
    try:
        claims = token_issuer.verify(token)
    except TokenValidationError as exc:
        raise ServiceError.unauthorized(exc.detail) from exc
    request.state.user = {"user_id": str(claims.user_id), "email": claims.email}
    return claims


def require_role(role: str) -> Callable[..., AccessTokenClaims]:
    """Build a dependency admitting only callers holding `role`."""

    async def dependency(
        principal: Annotated[AccessTokenClaims, Depends(get_current_principal)],
    ) -> AccessTokenClaims:
        if not principal.has_role(role):
            raise ServiceError(
                Outcome.FORBIDDEN, "You do not have permission to perform this action."
            )
        return principal

    return dependency
