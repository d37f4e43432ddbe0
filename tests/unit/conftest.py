"""Shared unit-test fixtures for identity services."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from uuid import uuid4

import pytest

from iam.core.jwt import AccessTokenIssuer, TokenIssuerSettings
from iam.core.link_state import ExternalLinkStateService
from iam.core.passwords import PasswordHasher
from iam.core.sessions import SessionService
from iam.models.rbac import Role, UserRole
from iam.models.user import User, normalize_identifier
from iam.services.auth_service import AuthService
from iam.services.external_link_service import ExternalLinkService
from iam.services.user_service import UserService
from tests.unit.fakes import (
    SIGNING_KEY,
    STATE_KEY,
    FrozenClock,
    InMemoryIdentityStore,
    RecordingRefreshLock,
    ReversibleProtector,
    StubOAuthClient,
)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime.now(UTC).replace(microsecond=0))


@pytest.fixture
def store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore()


@pytest.fixture(scope="session")
def password_hasher() -> PasswordHasher:
    return PasswordHasher()


@pytest.fixture
def token_issuer(clock: FrozenClock) -> AccessTokenIssuer:
    return AccessTokenIssuer(
        TokenIssuerSettings(
            issuer="iam-tests", audience="iam-clients", signing_key=SIGNING_KEY, expiry_minutes=15
        ),
        clock,
    )


@pytest.fixture
def session_service(clock: FrozenClock) -> SessionService:
    return SessionService(refresh_token_ttl_days=30, clock=clock)


@pytest.fixture
def auth_service(
    token_issuer: AccessTokenIssuer,
    session_service: SessionService,
    password_hasher: PasswordHasher,
    clock: FrozenClock,
) -> AuthService:
    return AuthService(
        token_issuer=token_issuer,
        session_service=session_service,
        password_hasher=password_hasher,
        user_service=UserService(),
        clock=clock,
    )


@pytest.fixture
def state_service(clock: FrozenClock) -> ExternalLinkStateService:
    return ExternalLinkStateService(signing_key=STATE_KEY, ttl_seconds=600, clock=clock)


@pytest.fixture
def oauth_client() -> StubOAuthClient:
    return StubOAuthClient()


@pytest.fixture
def protector() -> ReversibleProtector:
    return ReversibleProtector()


@pytest.fixture
def refresh_lock() -> RecordingRefreshLock:
    return RecordingRefreshLock()


@pytest.fixture
def link_service(
    state_service: ExternalLinkStateService,
    oauth_client: StubOAuthClient,
    protector: ReversibleProtector,
    refresh_lock: RecordingRefreshLock,
    clock: FrozenClock,
) -> ExternalLinkService:
    return ExternalLinkService(
        state_service=state_service,
        oauth_client=oauth_client,
        token_protector=protector,
        refresh_lock=refresh_lock,
        clock=clock,
        refresh_skew_seconds=60,
    )


@pytest.fixture
def make_user(
    store: InMemoryIdentityStore, password_hasher: PasswordHasher
) -> Callable[..., User]:
    """Create and store a user; roles are attached as direct grants."""

    def _make(
        username: str | None = "existing",
        email: str | None = "existing@example.com",
        password: str | None = "CorrectHorse1!",
        roles: list[str] | None = None,
        **flags: object,
    ) -> User:
        user = User(
            id=uuid4(),
            username=username,
            normalized_username=normalize_identifier(username) if username else None,
            email=email,
            normalized_email=normalize_identifier(email) if email else None,
            email_confirmed=True,
            two_factor_enabled=False,
            access_failed_count=0,
            is_locked=False,
            is_deleted=False,
        )
        for key, value in flags.items():
            setattr(user, key, value)
        if password is not None:
            user.password_hash = password_hasher.hash(user, password)
        for name in roles or []:
            role = Role(id=uuid4(), name=name, normalized_name=normalize_identifier(name))
            user.user_roles.append(UserRole(role=role, role_id=role.id))
        store.add(user)
        return user

    return _make
