"""Registration, login, refresh, logout, and password reset orchestration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from uuid import UUID

import structlog

from iam.core.clock import Clock, get_clock
from iam.core.jwt import AccessTokenClaims, AccessTokenIssuer, get_access_token_issuer
from iam.core.passwords import PasswordHasher, get_password_hasher
from iam.core.refresh_tokens import RefreshTokenCore
from iam.core.results import ServiceError, ServiceResult
from iam.core.sessions import ClientInfo, SessionService, get_session_service
from iam.db.store import IdentityStore, StoreConflictError
from iam.models.login_attempt import LoginAttempt
from iam.models.user import User, normalize_identifier
from iam.services.user_service import UserService, get_user_service

logger = structlog.get_logger(__name__)

INVALID_CREDENTIALS = "Invalid username or password."
INVALID_REFRESH_TOKEN = "Refresh token is invalid or expired."
INVALID_RESET_TOKEN = "Password reset token is invalid or expired."
DUPLICATE_USER = "Username or email already exists."


@dataclass(frozen=True)
class LoginResponse:
    """Access and refresh token pair returned exactly once."""

    access_token: str
    expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime


@dataclass(frozen=True)
class SessionSummary:
    """Session metadata visible to its owner."""

    id: UUID
    expires_at: datetime
    revoked_at: datetime | None
    is_active: bool
    ip_address: str | None
    user_agent: str | None
    device_name: str | None


@dataclass(frozen=True)
class RegistrationResponse:
    """Identifier of a newly registered user."""

    user_id: UUID


class AuthService:
    """Coordinates credential checks, token issuance, and session rows."""

    def __init__(
        self,
        token_issuer: AccessTokenIssuer,
        session_service: SessionService,
        password_hasher: PasswordHasher,
        user_service: UserService,
        clock: Clock,
    ) -> None:
        self._token_issuer = token_issuer
        self._session_service = session_service
        self._password_hasher = password_hasher
        self._user_service = user_service
        self._clock = clock
        self._secret_core = RefreshTokenCore()

    async def register(
        self,
        store: IdentityStore,
        username: str,
        email: str,
        password: str,
    ) -> ServiceResult[RegistrationResponse]:
        """Create a password identity with unique username and email."""
        username = (username or "").strip()
        email = (email or "").strip()
        errors: dict[str, list[str]] = {}
        if not username:
            errors["username"] = ["Username is required."]
        if not email:
            errors["email"] = ["Email is required."]
        if not password:
            errors["password"] = ["Password is required."]
        if errors:
            return ServiceResult.validation_failed(errors)

        normalized_username = normalize_identifier(username)
        normalized_email = normalize_identifier(email)
        if await store.user_exists(normalized_username, normalized_email):
            return ServiceResult.conflict(DUPLICATE_USER)

        user = User(
            username=username,
            normalized_username=normalized_username,
            email=email,
            normalized_email=normalized_email,
            email_confirmed=False,
            two_factor_enabled=False,
            access_failed_count=0,
            is_locked=False,
            is_deleted=False,
        )
        user.password_hash = self._password_hasher.hash(user, password)
        store.add(user)
        try:
            await store.flush()
            await store.commit()
        except StoreConflictError:
            return ServiceResult.conflict(DUPLICATE_USER)
        logger.info("user_registered", user_id=str(user.id))
        return ServiceResult.ok(RegistrationResponse(user_id=user.id), "User registered.")

    async def login(
        self,
        store: IdentityStore,
        identifier: str,
        password: str,
        client: ClientInfo | None = None,
    ) -> ServiceResult[LoginResponse]:
        """Authenticate by username or email and open a new session."""
        client = client or ClientInfo()
        if not (identifier or "").strip() or not password:
            await self._record_failure(store, None, identifier, client, "missing_credentials")
            return ServiceResult.failed(INVALID_CREDENTIALS)

        user = await self._user_service.get_user_by_identifier(store, identifier)

        if user is None or not user.password_hash:
            self._password_hasher.dummy_verify()
            await self._record_failure(store, user, identifier, client, "unknown_user")
            return ServiceResult.failed(INVALID_CREDENTIALS)

        if not user.is_available:
            await self._record_failure(store, user, identifier, client, "user_unavailable")
            return ServiceResult.failed(INVALID_CREDENTIALS)

        if not self._password_hasher.verify(user, user.password_hash, password):
            user.access_failed_count += 1
            await self._record_failure(store, user, identifier, client, "invalid_password")
            return ServiceResult.failed(INVALID_CREDENTIALS)

        user.access_failed_count = 0
        response = self._open_session(store, user, client)
        self._record_attempt(store, user, identifier, client, succeeded=True)
        await store.commit()
        logger.info("login_succeeded", user_id=str(user.id))
        return ServiceResult.ok(response, "Login successful.")

    async def refresh(
        self,
        store: IdentityStore,
        refresh_token: str,
        client: ClientInfo | None = None,
    ) -> ServiceResult[LoginResponse]:
        """Exchange a live refresh token for a new token pair, rotating the session."""
        session_row = await self._session_service.find_active_session(store, refresh_token)
        if session_row is None:
            await store.commit()
            logger.warning("refresh_rejected", reason="no_active_session")
            return ServiceResult.failed(INVALID_REFRESH_TOKEN)

        user = await store.get_user_by_id(session_row.user_id)
        if user is None or not user.is_available:
            self._session_service.revoke(session_row)
            await store.commit()
            logger.warning("refresh_rejected", reason="user_unavailable")
            return ServiceResult.failed(INVALID_REFRESH_TOKEN)

        issued = self._token_issuer.issue(user, self._user_service.resolve_role_names(user))
        raw_refresh_token = self._session_service.generate_refresh_token()
        replacement = self._session_service.rotate_session(
            store, session_row, raw_refresh_token, client
        )
        await store.commit()
        return ServiceResult.ok(
            LoginResponse(
                access_token=issued.access_token,
                expires_at=issued.expires_at,
                refresh_token=raw_refresh_token,
                refresh_token_expires_at=replacement.expires_at,
            ),
            "Token refreshed.",
        )

    async def logout(self, store: IdentityStore, refresh_token: str) -> ServiceResult[None]:
        """Revoke the session behind a refresh token; unknown tokens succeed silently."""
        if not refresh_token or not refresh_token.strip():
            return ServiceResult.validation_failed(
                {"refresh_token": ["Refresh token is required."]}
            )
        if await self._session_service.revoke_by_refresh_token(store, refresh_token):
            await store.commit()
        return ServiceResult.ok(message="Logged out.")

    async def reset_password(
        self,
        store: IdentityStore,
        email: str,
        reset_token: str,
        new_password: str,
    ) -> ServiceResult[None]:
        """Set a new password using an outstanding reset token."""
        if not new_password:
            return ServiceResult.validation_failed({"new_password": ["Password is required."]})

        user = await store.get_user_by_email(normalize_identifier(email or ""))
        if (
            user is None
            or user.is_deleted
            or not user.password_reset_token
            or not reset_token
            or not self._secret_core.matches(user.password_reset_token, reset_token)
        ):
            return ServiceResult.failed(INVALID_RESET_TOKEN)
        expires_at = user.password_reset_token_expires_at
        if expires_at is None or expires_at <= self._clock.now():
            return ServiceResult.failed(INVALID_RESET_TOKEN)

        user.password_hash = self._password_hasher.hash(user, new_password)
        user.password_reset_token = None
        user.password_reset_token_expires_at = None
        user.access_failed_count = 0
        user.is_locked = False
        for session_row in await self._session_service.list_sessions(store, user.id):
            self._session_service.revoke(session_row)
        await store.commit()
        logger.info("password_reset", user_id=str(user.id))
        return ServiceResult.ok(message="Password has been reset.")

    async def list_sessions(
        self, store: IdentityStore, principal: AccessTokenClaims
    ) -> ServiceResult[list[SessionSummary]]:
        """List the caller's sessions."""
        rows = await self._session_service.list_sessions(store, principal.user_id)
        now = self._clock.now()
        return ServiceResult.ok(
            [
                SessionSummary(
                    id=row.id,
                    expires_at=row.expires_at,
                    revoked_at=row.revoked_at,
                    is_active=row.is_active_at(now),
                    ip_address=row.ip_address,
                    user_agent=row.user_agent,
                    device_name=row.device_name,
                )
                for row in rows
            ]
        )

    async def revoke_session(
        self, store: IdentityStore, principal: AccessTokenClaims, session_id: UUID
    ) -> ServiceResult[None]:
        """Revoke one of the caller's sessions."""
        row = await self._session_service.revoke_session_by_id(
            store, principal.user_id, session_id
        )
        if row is None:
            raise ServiceError.not_found("Session not found.")
        await store.commit()
        return ServiceResult.ok(message="Session revoked.")

    def _open_session(self, store: IdentityStore, user: User, client: ClientInfo) -> LoginResponse:
        issued = self._token_issuer.issue(user, self._user_service.resolve_role_names(user))
        raw_refresh_token = self._session_service.generate_refresh_token()
        session_row = self._session_service.create_session(
            store, user.id, raw_refresh_token, client
        )
        return LoginResponse(
            access_token=issued.access_token,
            expires_at=issued.expires_at,
            refresh_token=raw_refresh_token,
            refresh_token_expires_at=session_row.expires_at,
        )

    async def _record_failure(
        self,
        store: IdentityStore,
        user: User | None,
        identifier: str,
        client: ClientInfo,
        reason: str,
    ) -> None:
        self._record_attempt(store, user, identifier, client, succeeded=False, reason=reason)
        await store.commit()
        logger.warning(
            "login_failed",
            user_id=str(user.id) if user is not None else None,
            reason=reason,
            ip_address=client.ip_address,
        )

    def _record_attempt(
        self,
        store: IdentityStore,
        user: User | None,
        identifier: str,
        client: ClientInfo,
        succeeded: bool,
        reason: str | None = None,
    ) -> None:
        store.add(
            LoginAttempt(
                user_id=user.id if user is not None else None,
                identifier=(identifier or "").strip() or None,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                is_successful=succeeded,
                failure_reason=reason,
                attempted_at=self._clock.now(),
            )
        )


@lru_cache
def get_auth_service() -> AuthService:
    """Create and cache auth service."""
    return AuthService(
        token_issuer=get_access_token_issuer(),
        session_service=get_session_service(),
        password_hasher=get_password_hasher(),
        user_service=get_user_service(),
        clock=get_clock(),
    )
