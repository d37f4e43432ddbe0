"""Integration tests for external account linking routes."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from iam.config import GOOGLE_CALENDAR_SCOPE
from iam.core.jwt import AccessTokenClaims
from iam.core.link_state import ExternalLinkStateService
from iam.core.oauth import ExternalOAuthToken
from iam.dependencies import get_current_principal, get_identity_store
from iam.error_handlers import register_exception_handlers
from iam.models.external import ExternalToken
from iam.models.user import User, normalize_identifier
from iam.routers.external_links import router
from iam.services.external_link_service import ExternalLinkService, get_external_link_service
from tests.unit.fakes import (
    STATE_KEY,
    FrozenClock,
    InMemoryIdentityStore,
    RecordingRefreshLock,
    ReversibleProtector,
    StubOAuthClient,
)


def _claims(user_id: UUID, roles: tuple[str, ...] = ()) -> AccessTokenClaims:
    return AccessTokenClaims(
        user_id=user_id,
        username="linker",
        email="linker@example.com",
        roles=roles,
        jti="jti",
        expires_at=datetime.now(UTC) + timedelta(minutes=5),
    )


class _Harness:
    """In-memory collaborators plus an app wired to them."""

    def __init__(self, roles: tuple[str, ...] = ()) -> None:
        self.clock = FrozenClock(datetime.now(UTC).replace(microsecond=0))
        self.store = InMemoryIdentityStore()
        self.oauth_client = StubOAuthClient()
        self.user = User(
            id=uuid4(),
            username="linker",
            normalized_username=normalize_identifier("linker"),
            email="linker@example.com",
            normalized_email=normalize_identifier("linker@example.com"),
            is_locked=False,
            is_deleted=False,
        )
        self.store.add(self.user)
        self.service = ExternalLinkService(
            state_service=ExternalLinkStateService(
                signing_key=STATE_KEY, ttl_seconds=600, clock=self.clock
            ),
            oauth_client=self.oauth_client,
            token_protector=ReversibleProtector(),
            refresh_lock=RecordingRefreshLock(),
            clock=self.clock,
        )
        self.app = FastAPI()
        register_exception_handlers(self.app, environment="production")
        self.app.include_router(router)
        self.app.dependency_overrides[get_identity_store] = lambda: self.store
        self.app.dependency_overrides[get_external_link_service] = lambda: self.service
        self.app.dependency_overrides[get_current_principal] = lambda: _claims(
            self.user.id, roles
        )

    def client(self) -> AsyncClient:
        return AsyncClient(transport=ASGITransport(app=self.app), base_url="http://testserver")


def _stored_token(harness: _Harness, expires_in: timedelta) -> ExternalToken:
    return ExternalToken(
        user_id=harness.user.id,
        provider="google",
        access_token="protected:AT1",
        refresh_token="protected:RT1",
        expires_at=harness.clock.now() + expires_in,
        scopes=GOOGLE_CALENDAR_SCOPE,
        updated_at=harness.clock.now(),
    )


@pytest.mark.asyncio
async def test_start_complete_list_and_unlink() -> None:
    """The full link lifecycle never exposes stored token values."""
    harness = _Harness()
    harness.oauth_client.exchange_results.append(
        ExternalOAuthToken(
            access_token="AT1",
            refresh_token="RT1",
            expires_in_seconds=3600,
            scope=f"openid {GOOGLE_CALENDAR_SCOPE}",
            token_type="Bearer",
        )
    )

    async with harness.client() as client:
        started = await client.post("/api/external-links/google/start")
        state = started.json()["data"]["state"]
        completed = await client.post(
            "/api/external-links/google/complete", json={"code": "auth-code", "state": state}
        )
        listed = await client.get("/api/external-links", params={"provider": "google"})
        removed = await client.delete("/api/external-links/google")
        removed_again = await client.delete("/api/external-links/google")

    assert started.status_code == 200
    assert started.json()["data"]["authorization_url"].startswith("https://accounts.google.com")
    assert completed.status_code == 200
    assert completed.json()["data"]["subject_id"] == "google-subject-1"
    assert listed.status_code == 200
    assert [link["provider"] for link in listed.json()["data"]] == ["google"]
    assert "AT1" not in listed.text and "RT1" not in listed.text
    assert removed.status_code == 200
    assert removed_again.status_code == 400
    assert removed_again.json()["message"] == "External provider is not linked."


@pytest.mark.asyncio
async def test_complete_with_tampered_state_is_rejected() -> None:
    harness = _Harness()

    async with harness.client() as client:
        response = await client.post(
            "/api/external-links/google/complete", json={"code": "auth-code", "state": "bogus"}
        )

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid state value."
    assert harness.oauth_client.exchanged_codes == []


@pytest.mark.asyncio
async def test_calendar_token_requires_planner_role() -> None:
    harness = _Harness(roles=("User",))

    async with harness.client() as client:
        response = await client.get(
            f"/api/external-links/google/calendar-token/{harness.user.id}"
        )

    assert response.status_code == 403
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_calendar_token_for_planner_service() -> None:
    harness = _Harness(roles=("PlannerService",))
    harness.store.add(_stored_token(harness, expires_in=timedelta(minutes=30)))

    async with harness.client() as client:
        linked = await client.get(f"/api/external-links/google/calendar-token/{harness.user.id}")
        unknown = await client.get(f"/api/external-links/google/calendar-token/{uuid4()}")

    assert linked.status_code == 200
    assert linked.json()["data"]["access_token"] == "AT1"
    assert unknown.status_code == 400
    assert unknown.json()["message"] == "User is not available."