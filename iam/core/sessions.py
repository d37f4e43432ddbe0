"""Refresh-token backed session lifecycle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from uuid import UUID

import structlog

from iam.config import get_settings
from iam.core.clock import Clock, get_clock
from iam.core.refresh_tokens import RefreshTokenCore
from iam.db.store import IdentityStore
from iam.models.session import Session

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ClientInfo:
    """Client metadata recorded on sessions and login attempts."""

    ip_address: str | None = None
    user_agent: str | None = None
    device_name: str | None = None


class SessionService:
    """Service for session creation, lookup, rotation, and revocation.

    Methods stage changes on the store; callers own the commit.
    """

    def __init__(
        self,
        refresh_token_ttl_days: int,
        clock: Clock,
        refresh_token_core: RefreshTokenCore | None = None,
    ) -> None:
        self._ttl = timedelta(days=refresh_token_ttl_days)
        self._clock = clock
        self._core = refresh_token_core or RefreshTokenCore()

    def generate_refresh_token(self) -> str:
        """Return a new raw refresh token; it is never persisted."""
        return self._core.generate()

    def create_session(
        self,
        store: IdentityStore,
        user_id: UUID,
        raw_refresh_token: str,
        client: ClientInfo | None = None,
    ) -> Session:
        """Stage a session row holding only the refresh token hash."""
        client = client or ClientInfo()
        session_row = Session(
            user_id=user_id,
            hashed_refresh_token=self._core.hash(raw_refresh_token),
            expires_at=self._clock.now() + self._ttl,
            revoked_at=None,
            is_revoked=False,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            device_name=client.device_name,
        )
        store.add(session_row)
        return session_row

    async def find_active_session(
        self, store: IdentityStore, raw_refresh_token: str
    ) -> Session | None:
        """Return the non-revoked, unexpired session for a raw refresh token.

        An expired session that was never revoked is revoked as a side effect.
        """
        if not raw_refresh_token or not raw_refresh_token.strip():
            return None
        session_row = await store.get_session_by_refresh_hash(self._core.hash(raw_refresh_token))
        if session_row is None or session_row.is_revoked or session_row.revoked_at is not None:
            return None
        if session_row.expires_at <= self._clock.now():
            self.revoke(session_row)
            logger.info("session_expired", session_id=str(session_row.id))
            return None
        return session_row

    def rotate_session(
        self,
        store: IdentityStore,
        session_row: Session,
        raw_refresh_token: str,
        client: ClientInfo | None = None,
    ) -> Session:
        """Revoke the presented session and stage its replacement."""
        self.revoke(session_row)
        replacement = self.create_session(
            store=store,
            user_id=session_row.user_id,
            raw_refresh_token=raw_refresh_token,
            client=client
            or ClientInfo(
                ip_address=session_row.ip_address,
                user_agent=session_row.user_agent,
                device_name=session_row.device_name,
            ),
        )
        logger.info(
            "session_rotated",
            revoked_session_id=str(session_row.id),
            user_id=str(session_row.user_id),
        )
        return replacement

    def revoke(self, session_row: Session) -> None:
        """Mark a session revoked; already-revoked sessions are left untouched."""
        if session_row.is_revoked:
            return
        session_row.is_revoked = True
        session_row.revoked_at = self._clock.now()

    async def revoke_by_refresh_token(self, store: IdentityStore, raw_refresh_token: str) -> bool:
        """Revoke the session for a raw refresh token; returns False when unknown."""
        session_row = await store.get_session_by_refresh_hash(self._core.hash(raw_refresh_token))
        if session_row is None:
            return False
        self.revoke(session_row)
        return True

    async def list_sessions(self, store: IdentityStore, user_id: UUID) -> list[Session]:
        """List every session owned by the user."""
        return await store.list_sessions_for_user(user_id)

    async def revoke_session_by_id(
        self, store: IdentityStore, user_id: UUID, session_id: UUID
    ) -> Session | None:
        """Revoke one of the user's own sessions; returns None when not owned."""
        session_row = await store.get_session_by_id(session_id)
        if session_row is None or session_row.user_id != user_id:
            return None
        self.revoke(session_row)
        return session_row


@lru_cache
def get_session_service() -> SessionService:
    """Create and cache session service."""
    settings = get_settings()
    return SessionService(
        refresh_token_ttl_days=settings.jwt.refresh_token_ttl_days,
        clock=get_clock(),
    )
