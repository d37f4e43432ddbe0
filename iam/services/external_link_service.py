"""External account linking and cached provider token access."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from uuid import UUID

import structlog

from iam.config import GOOGLE_CALENDAR_SCOPE, get_settings
from iam.core.clock import Clock, get_clock
from iam.core.jwt import AccessTokenClaims
from iam.core.link_state import ExternalLinkStateService, get_link_state_service
from iam.core.locks import RefreshLock, get_refresh_lock
from iam.core.oauth import (
    ExternalOAuthClient,
    ExternalOAuthToken,
    OAuthProtocolError,
    get_google_oauth_client,
)
from iam.core.results import ServiceResult
from iam.core.token_protector import TokenProtectionError, TokenProtector, get_token_protector
from iam.db.store import IdentityStore, StoreConflictError
from iam.models.external import ExternalIdentity, ExternalToken, normalize_provider

logger = structlog.get_logger(__name__)

GOOGLE_PROVIDER = "google"
SUPPORTED_PROVIDERS = frozenset({GOOGLE_PROVIDER})

UNSUPPORTED_PROVIDER = "Unsupported external provider."
INVALID_STATE = "Invalid state value."
PROVIDER_MISMATCH = "Provider mismatch."
USER_NOT_AVAILABLE = "User is not available."
MISSING_ACCESS_TOKEN = "Access token was not returned by the provider."
MISSING_PROFILE = "External profile information is missing."
LINKED_TO_OTHER_USER = "External account is already linked to another user."
DIFFERENT_ACCOUNT_LINKED = "A different external account is already linked."
REFRESH_TOKEN_REQUIRED = "Refresh token is required to link the external account."
NOT_LINKED = "External provider is not linked."
REFRESH_TOKEN_MISSING = "Refresh token is missing."
REFRESH_FAILED = "Failed to refresh access token."


@dataclass(frozen=True)
class ExternalLinkStart:
    """Authorization redirect for the provider consent screen."""

    authorization_url: str
    state: str
    provider: str


@dataclass(frozen=True)
class ExternalLinkSummary:
    """Linked account snapshot; never carries token values."""

    provider: str
    subject_id: str
    email: str | None
    display_name: str | None
    linked_at: datetime
    scopes: list[str]
    token_expires_at: datetime | None


@dataclass(frozen=True)
class CachedAccessToken:
    """Unprotected provider access token handed to trusted callers."""

    access_token: str
    expires_at: datetime
    scopes: list[str]


@dataclass(frozen=True)
class _TokenMessages:
    not_linked: str
    scope_missing: str


_GENERIC_MESSAGES = _TokenMessages(
    not_linked=NOT_LINKED,
    scope_missing="Required scope is missing.",
)
_CALENDAR_MESSAGES = _TokenMessages(
    not_linked="Google Calendar is not linked.",
    scope_missing="Google Calendar scope is missing.",
)


def _split_scopes(scopes: str | None) -> list[str]:
    return [scope for scope in (scopes or "").split() if scope]


class ExternalLinkService:
    """Coordinates link state, code exchange, token protection, and refresh-on-read."""

    def __init__(
        self,
        state_service: ExternalLinkStateService,
        oauth_client: ExternalOAuthClient,
        token_protector: TokenProtector,
        refresh_lock: RefreshLock,
        clock: Clock,
        refresh_skew_seconds: int = 60,
    ) -> None:
        self._state_service = state_service
        self._oauth_client = oauth_client
        self._protector = token_protector
        self._refresh_lock = refresh_lock
        self._clock = clock
        self._refresh_skew = timedelta(seconds=refresh_skew_seconds)

    async def start_link(
        self,
        store: IdentityStore,
        principal: AccessTokenClaims,
        provider: str,
    ) -> ServiceResult[ExternalLinkStart]:
        """Issue signed state and the provider authorization URL."""
        normalized = normalize_provider(provider or "")
        if normalized not in SUPPORTED_PROVIDERS:
            return ServiceResult.failed(UNSUPPORTED_PROVIDER)

        user = await store.get_user_by_id(principal.user_id)
        if user is None or not user.is_available:
            return ServiceResult.failed(USER_NOT_AVAILABLE)

        state = self._state_service.create_state(user.id, normalized)
        try:
            authorization_url = self._oauth_client.build_authorization_url(state)
        except OAuthProtocolError as exc:
            return ServiceResult.failed(exc.detail)
        return ServiceResult.ok(
            ExternalLinkStart(authorization_url=authorization_url, state=state, provider=normalized)
        )

    async def complete_link(
        self,
        store: IdentityStore,
        provider: str,
        code: str,
        state: str,
        principal: AccessTokenClaims | None = None,
    ) -> ServiceResult[ExternalLinkSummary]:
        """Redeem an authorization code and upsert the link and its protected tokens."""
        normalized = normalize_provider(provider or "")
        if normalized not in SUPPORTED_PROVIDERS:
            return ServiceResult.failed(UNSUPPORTED_PROVIDER)
        if not code or not code.strip():
            return ServiceResult.validation_failed({"code": ["Authorization code is required."]})

        validation = self._state_service.validate_state(state)
        if not validation.is_valid or validation.user_id is None:
            logger.warning("external_link_state_rejected", reason=validation.error)
            return ServiceResult.failed(INVALID_STATE)
        if validation.provider != normalized:
            return ServiceResult.failed(PROVIDER_MISMATCH)
        if principal is not None and principal.user_id != validation.user_id:
            return ServiceResult.failed(INVALID_STATE)

        user = await store.get_user_by_id(validation.user_id)
        if user is None or not user.is_available:
            return ServiceResult.failed(USER_NOT_AVAILABLE)

        try:
            token = await self._oauth_client.exchange_code(code.strip())
        except OAuthProtocolError as exc:
            logger.warning("external_code_exchange_failed", provider=normalized, code=exc.code)
            return ServiceResult.failed(exc.detail)
        if not token.access_token.strip():
            return ServiceResult.failed(MISSING_ACCESS_TOKEN)

        try:
            profile = await self._oauth_client.get_user_profile(token.access_token)
        except OAuthProtocolError as exc:
            return ServiceResult.failed(exc.detail)
        subject_id = profile.subject_id.strip()
        if not subject_id:
            return ServiceResult.failed(MISSING_PROFILE)

        owner = await store.get_external_identity_by_subject(normalized, subject_id)
        if owner is not None and owner.user_id != user.id:
            return ServiceResult.failed(LINKED_TO_OTHER_USER)
        identity = await store.get_external_identity(user.id, normalized)
        if identity is not None and identity.subject_id != subject_id:
            return ServiceResult.failed(DIFFERENT_ACCOUNT_LINKED)

        token_row = await store.get_external_token(user.id, normalized)
        has_stored_refresh = token_row is not None and bool(token_row.refresh_token)
        if not token.refresh_token and not has_stored_refresh:
            return ServiceResult.failed(REFRESH_TOKEN_REQUIRED)

        now = self._clock.now()
        if identity is None:
            identity = ExternalIdentity(
                user_id=user.id,
                provider=normalized,
                subject_id=subject_id,
                email=profile.email,
                display_name=profile.display_name,
                linked_at=now,
            )
            store.add(identity)
        else:
            identity.email = profile.email or identity.email
            identity.display_name = profile.display_name or identity.display_name

        token_row = self._upsert_token(store, token_row, user.id, normalized, token, now)
        try:
            await store.commit()
        except StoreConflictError:
            return ServiceResult.conflict(LINKED_TO_OTHER_USER)

        logger.info("external_link_completed", user_id=str(user.id), provider=normalized)
        return ServiceResult.ok(self._summary(identity, token_row), "External account linked.")

    async def unlink(
        self,
        store: IdentityStore,
        principal: AccessTokenClaims,
        provider: str,
    ) -> ServiceResult[None]:
        """Remove the caller's link and stored tokens for a provider."""
        normalized = normalize_provider(provider or "")
        if normalized not in SUPPORTED_PROVIDERS:
            return ServiceResult.failed(UNSUPPORTED_PROVIDER)

        identity = await store.get_external_identity(principal.user_id, normalized)
        token_row = await store.get_external_token(principal.user_id, normalized)
        if identity is None and token_row is None:
            return ServiceResult.failed(NOT_LINKED)
        if identity is not None:
            await store.delete(identity)
        if token_row is not None:
            await store.delete(token_row)
        await store.commit()
        logger.info("external_link_removed", user_id=str(principal.user_id), provider=normalized)
        return ServiceResult.ok(message="External account unlinked.")

    async def list_links(
        self,
        store: IdentityStore,
        principal: AccessTokenClaims,
        provider: str | None = None,
    ) -> ServiceResult[list[ExternalLinkSummary]]:
        """List the caller's linked accounts ordered by provider."""
        normalized = normalize_provider(provider) if provider else None
        identities = await store.list_external_identities(principal.user_id, normalized or None)
        summaries = []
        for identity in identities:
            token_row = await store.get_external_token(principal.user_id, identity.provider)
            summaries.append(self._summary(identity, token_row))
        return ServiceResult.ok(summaries)

    async def get_cached_access_token(
        self,
        store: IdentityStore,
        user_id: UUID,
        provider: str,
        required_scope: str | None,
    ) -> ServiceResult[CachedAccessToken]:
        """Return a usable provider access token, refreshing it when near expiry."""
        normalized = normalize_provider(provider or "")
        if normalized not in SUPPORTED_PROVIDERS:
            return ServiceResult.failed(UNSUPPORTED_PROVIDER)
        return await self._read_access_token(
            store, user_id, normalized, required_scope, _GENERIC_MESSAGES
        )

    async def get_google_calendar_access_token(
        self,
        store: IdentityStore,
        user_id: UUID,
    ) -> ServiceResult[CachedAccessToken]:
        """Return a Google access token carrying the calendar scope."""
        return await self._read_access_token(
            store, user_id, GOOGLE_PROVIDER, GOOGLE_CALENDAR_SCOPE, _CALENDAR_MESSAGES
        )

    async def _read_access_token(
        self,
        store: IdentityStore,
        user_id: UUID,
        provider: str,
        required_scope: str | None,
        messages: _TokenMessages,
    ) -> ServiceResult[CachedAccessToken]:
        user = await store.get_user_by_id(user_id)
        if user is None or not user.is_available:
            return ServiceResult.failed(USER_NOT_AVAILABLE)
        token_row = await store.get_external_token(user_id, provider)
        if token_row is None:
            return ServiceResult.failed(messages.not_linked)
        if required_scope and required_scope.casefold() not in token_row.scope_set():
            return ServiceResult.failed(messages.scope_missing)
        if not self._needs_refresh(token_row):
            return self._cached(token_row)

        async with self._refresh_lock.hold(user_id, provider):
            # Another holder may have refreshed while this caller waited.
            token_row = await store.get_external_token(user_id, provider)
            if token_row is None:
                return ServiceResult.failed(messages.not_linked)
            if not self._needs_refresh(token_row):
                return self._cached(token_row)
            return await self._refresh(store, token_row)

    async def _refresh(
        self, store: IdentityStore, token_row: ExternalToken
    ) -> ServiceResult[CachedAccessToken]:
        if not token_row.refresh_token:
            return ServiceResult.failed(REFRESH_TOKEN_MISSING)
        try:
            refresh_token = self._protector.unprotect(token_row.refresh_token)
            refreshed = await self._oauth_client.refresh_token(refresh_token)
        except (OAuthProtocolError, TokenProtectionError) as exc:
            logger.warning(
                "external_token_refresh_failed",
                user_id=str(token_row.user_id),
                provider=token_row.provider,
                error=type(exc).__name__,
            )
            return ServiceResult.failed(REFRESH_FAILED)
        if not refreshed.access_token.strip():
            return ServiceResult.failed(REFRESH_FAILED)

        now = self._clock.now()
        token_row.access_token = self._protector.protect(refreshed.access_token)
        token_row.expires_at = now + timedelta(seconds=refreshed.expires_in_seconds)
        if refreshed.scope and refreshed.scope.strip():
            token_row.scopes = refreshed.scope.strip()
        if refreshed.refresh_token and refreshed.refresh_token != refresh_token:
            token_row.refresh_token = self._protector.protect(refreshed.refresh_token)
        token_row.updated_at = now
        await store.commit()

        logger.info(
            "external_token_refreshed",
            user_id=str(token_row.user_id),
            provider=token_row.provider,
        )
        return ServiceResult.ok(
            CachedAccessToken(
                access_token=refreshed.access_token,
                expires_at=token_row.expires_at,
                scopes=_split_scopes(token_row.scopes),
            )
        )

    def _needs_refresh(self, token_row: ExternalToken) -> bool:
        if not token_row.access_token:
            return True
        return self._clock.now() + self._refresh_skew >= token_row.expires_at

    def _cached(self, token_row: ExternalToken) -> ServiceResult[CachedAccessToken]:
        try:
            access_token = self._protector.unprotect(token_row.access_token or "")
        except (TokenProtectionError, ValueError):
            return ServiceResult.failed("Stored access token could not be read.")
        return ServiceResult.ok(
            CachedAccessToken(
                access_token=access_token,
                expires_at=token_row.expires_at,
                scopes=_split_scopes(token_row.scopes),
            )
        )

    def _upsert_token(
        self,
        store: IdentityStore,
        token_row: ExternalToken | None,
        user_id: UUID,
        provider: str,
        token: ExternalOAuthToken,
        now: datetime,
    ) -> ExternalToken:
        scopes = (token.scope or "").strip()
        if not scopes:
            scopes = (token_row.scopes if token_row is not None else None) or GOOGLE_CALENDAR_SCOPE
        expires_at = now + timedelta(seconds=token.expires_in_seconds)
        protected_access = self._protector.protect(token.access_token)

        if token_row is None:
            token_row = ExternalToken(
                user_id=user_id,
                provider=provider,
                access_token=protected_access,
                refresh_token=self._protector.protect(token.refresh_token or ""),
                expires_at=expires_at,
                scopes=scopes,
                updated_at=now,
            )
            store.add(token_row)
            return token_row

        token_row.access_token = protected_access
        token_row.expires_at = expires_at
        token_row.scopes = scopes
        token_row.updated_at = now
        # Repeat consent often omits the refresh token; keep the stored one.
        if token.refresh_token:
            token_row.refresh_token = self._protector.protect(token.refresh_token)
        return token_row

    @staticmethod
    def _summary(
        identity: ExternalIdentity, token_row: ExternalToken | None
    ) -> ExternalLinkSummary:
        return ExternalLinkSummary(
            provider=identity.provider,
            subject_id=identity.subject_id,
            email=identity.email,
            display_name=identity.display_name,
            linked_at=identity.linked_at,
            scopes=_split_scopes(token_row.scopes) if token_row is not None else [],
            token_expires_at=token_row.expires_at if token_row is not None else None,
        )


@lru_cache
def get_external_link_service() -> ExternalLinkService:
    """Create and cache external link service."""
    settings = get_settings()
    return ExternalLinkService(
        state_service=get_link_state_service(),
        oauth_client=get_google_oauth_client(),
        token_protector=get_token_protector(),
        refresh_lock=get_refresh_lock(),
        clock=get_clock(),
        refresh_skew_seconds=settings.external_link.refresh_skew_seconds,
    )
