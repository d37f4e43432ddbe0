"""External account linking routes."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from iam.core.jwt import AccessTokenClaims
from iam.db.store import IdentityStore
from iam.dependencies import get_current_principal, get_identity_store, require_role
from iam.error_handlers import to_response
from iam.schemas.external_link import CompleteExternalLinkRequest
from iam.services.external_link_service import (
    GOOGLE_PROVIDER,
    ExternalLinkService,
    get_external_link_service,
)

PLANNER_SERVICE_ROLE = "PlannerService"

router = APIRouter(prefix="/api/external-links", tags=["external-links"])


@router.post("/google/start")
async def start_google_link(
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    principal: Annotated[AccessTokenClaims, Depends(get_current_principal)],
    link_service: Annotated[ExternalLinkService, Depends(get_external_link_service)],
) -> JSONResponse:
    """Begin linking the caller's Google account."""
    result = await link_service.start_link(store, principal, GOOGLE_PROVIDER)
    return to_response(result, request)


@router.post("/google/complete")
async def complete_google_link(
    payload: CompleteExternalLinkRequest,
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    principal: Annotated[AccessTokenClaims, Depends(get_current_principal)],
    link_service: Annotated[ExternalLinkService, Depends(get_external_link_service)],
) -> JSONResponse:
    """Finish linking with the code and state returned by Google."""
    result = await link_service.complete_link(
        store,
        provider=GOOGLE_PROVIDER,
        code=payload.code,
        state=payload.state,
        principal=principal,
    )
    return to_response(result, request)


@router.delete("/google")
async def unlink_google(
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    principal: Annotated[AccessTokenClaims, Depends(get_current_principal)],
    link_service: Annotated[ExternalLinkService, Depends(get_external_link_service)],
) -> JSONResponse:
    """Remove the caller's Google link and stored tokens."""
    result = await link_service.unlink(store, principal, GOOGLE_PROVIDER)
    return to_response(result, request)


@router.get("")
async def list_links(
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    principal: Annotated[AccessTokenClaims, Depends(get_current_principal)],
    link_service: Annotated[ExternalLinkService, Depends(get_external_link_service)],
    provider: Annotated[str | None, Query(max_length=50)] = None,
) -> JSONResponse:
    """List the caller's linked accounts."""
    result = await link_service.list_links(store, principal, provider)
    return to_response(result, request)


@router.get("/google/calendar-token/{user_id}")
async def google_calendar_token(
    user_id: UUID,
    request: Request,
    store: Annotated[IdentityStore, Depends(get_identity_store)],
    _: Annotated[AccessTokenClaims, Depends(require_role(PLANNER_SERVICE_ROLE))],
    link_service: Annotated[ExternalLinkService, Depends(get_external_link_service)],
) -> JSONResponse:
    """Hand a fresh Google Calendar access token to the planner service."""
    result = await link_service.get_google_calendar_access_token(store, user_id)
    return to_response(result, request)
