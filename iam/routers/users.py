"""Current user routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from iam.core.jwt import AccessTokenClaims
from iam.db.store import IdentityStore
from iam.dependencies import get_current_principal, get_identity_store
from iam.error_handlers import to_response
from iam.services.user_service import UserService, get_user_service

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me")
async def me(
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    principal: Annotated[AccessTokenClaims, Depends(get_current_principal)],
    user_service: Annotated[UserService, Depends(get_user_service)],
) -> JSONResponse:
    """Return the caller's profile with effective roles and permissions."""
    result = await user_service.get_current_profile(store, principal)
    return to_response(result, request)
