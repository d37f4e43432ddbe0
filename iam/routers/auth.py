"""Authentication routes."""

from __future__ import annotations

from dataclasses import replace
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from iam.core.sessions import ClientInfo
from iam.db.store import IdentityStore
from iam.dependencies import get_client_info, get_identity_store
from iam.error_handlers import to_response
from iam.schemas.auth import (
    LoginRequest,
    LogoutRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
)
from iam.services.auth_service import AuthService, get_auth_service

router = APIRouter(prefix="/api/authentications", tags=["authentications"])


@router.post("/register")
async def register(
    payload: RegisterRequest,
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
) -> JSONResponse:
    """Create a password account."""
    result = await auth_service.register(
        store, username=payload.username, email=payload.email, password=payload.password
    )
    return to_response(result, request)


@router.post("/login")
async def login(
    payload: LoginRequest,
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
    client: Annotated[ClientInfo, Depends(get_client_info)],
) -> JSONResponse:
    """Authenticate with username or email and password."""
    if payload.device_name:
        client = replace(client, device_name=payload.device_name)
    result = await auth_service.login(
        store, identifier=payload.identifier, password=payload.password, client=client
    )
    return to_response(result, request)


@router.post("/refresh")
async def refresh(
    payload: RefreshTokenRequest,
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
    client: Annotated[ClientInfo, Depends(get_client_info)],
) -> JSONResponse:
    """Rotate a refresh token into a new token pair."""
    result = await auth_service.refresh(store, refresh_token=payload.refresh_token, client=client)
    return to_response(result, request)


@router.post("/logout")
async def logout(
    payload: LogoutRequest,
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
) -> JSONResponse:
    """Revoke the session behind a refresh token."""
    result = await auth_service.logout(store, refresh_token=payload.refresh_token)
    return to_response(result, request)


@router.post("/reset-password")
async def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
) -> JSONResponse:
    """Set a new password with a reset token."""
    result = await auth_service.reset_password(
        store,
        email=payload.email,
        reset_token=payload.reset_token,
        new_password=payload.new_password,
    )
    return to_response(result, request)
