"""Session management routes for the signed-in user."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from iam.core.jwt import AccessTokenClaims
from iam.db.store import IdentityStore
from iam.dependencies import get_current_principal, get_identity_store
from iam.error_handlers import to_response
from iam.services.auth_service import AuthService, get_auth_service

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.get("/me")
async def my_sessions(
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    principal: Annotated[AccessTokenClaims, Depends(get_current_principal)],
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
) -> JSONResponse:
    result = await auth_service.list_sessions(store, principal)
    return to_response(result, request)


@router.delete("/{session_id}")
async def revoke_session(
    session_id: UUID,
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    principal: Annotated[AccessTokenClaims, Depends(get_current_principal)],
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
) -> JSONResponse:
    result = await auth_service.revoke_session(store, principal, session_id)
    return to_response(result, request)
