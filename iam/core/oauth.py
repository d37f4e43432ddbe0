"""Google OAuth operations for external account linking via authlib."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

from authlib.integrations.httpx_client import AsyncOAuth2Client

from iam.config import get_settings

DEFAULT_EXPIRES_IN_SECONDS = 3600


class OAuthProtocolError(Exception):
    """Raised when OAuth protocol operations fail."""

    def __init__(self, detail: str, code: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code


@dataclass(frozen=True)
class ExternalOAuthToken:
    """Token response returned by the provider."""

    access_token: str
    refresh_token: str | None
    expires_in_seconds: int
    scope: str | None
    token_type: str | None


@dataclass(frozen=True)
class ExternalOAuthUserProfile:
    """Subset of provider profile data recorded on link."""

    subject_id: str
    email: str | None
    display_name: str | None


class ExternalOAuthClient(Protocol):
    """Provider operations consumed by the link service."""

    def build_authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> ExternalOAuthToken: ...

    async def refresh_token(self, refresh_token: str) -> ExternalOAuthToken: ...

    async def get_user_profile(self, access_token: str) -> ExternalOAuthUserProfile: ...


def _to_token(
    payload: dict[str, Any], fallback_refresh_token: str | None = None
) -> ExternalOAuthToken:
    """Map a raw token payload, keeping the caller's refresh token when omitted."""
    raw_expires_in = payload.get("expires_in")
    try:
        expires_in = max(int(raw_expires_in), 0)
    except (TypeError, ValueError):
        expires_in = DEFAULT_EXPIRES_IN_SECONDS
    refresh_token = payload.get("refresh_token") or fallback_refresh_token
    return ExternalOAuthToken(
        access_token=str(payload.get("access_token") or ""),
        refresh_token=str(refresh_token) if refresh_token else None,
        expires_in_seconds=expires_in,
        scope=payload.get("scope"),
        token_type=payload.get("token_type"),
    )


class GoogleOAuthClient:
    """Authlib-backed Google OAuth client requesting offline calendar access."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str | None,
        authorization_endpoint: str,
        token_endpoint: str,
        userinfo_endpoint: str,
        scopes: list[str],
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._authorization_endpoint = authorization_endpoint
        self._token_endpoint = token_endpoint
        self._userinfo_endpoint = userinfo_endpoint
        self._scopes = scopes

    def build_authorization_url(self, state: str) -> str:
        """Build the consent URL embedding the signed state."""
        self._require_configuration()
        client = self._build_client()
        authorization_url, _ = client.create_authorization_url(
            self._authorization_endpoint,
            state=state,
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
        )
        return authorization_url

    async def exchange_code(self, code: str) -> ExternalOAuthToken:
        """Exchange an authorization code for tokens."""
        self._require_configuration()
        client = self._build_client()
        try:
            payload = await client.fetch_token(
                self._token_endpoint,
                grant_type="authorization_code",
                code=code,
                redirect_uri=self._redirect_uri,
            )
        except Exception as exc:
            raise OAuthProtocolError(
                "OAuth token exchange failed.", "oauth_exchange_failed", 400
            ) from exc
        finally:
            await client.aclose()
        return _to_token(dict(payload))

    async def refresh_token(self, refresh_token: str) -> ExternalOAuthToken:
        """Redeem a refresh token for a new access token."""
        self._require_configuration()
        client = self._build_client()
        try:
            payload = await client.refresh_token(self._token_endpoint, refresh_token=refresh_token)
        except Exception as exc:
            raise OAuthProtocolError(
                "OAuth token refresh failed.", "oauth_refresh_failed", 400
            ) from exc
        finally:
            await client.aclose()
        return _to_token(dict(payload), fallback_refresh_token=refresh_token)

    async def get_user_profile(self, access_token: str) -> ExternalOAuthUserProfile:
        """Fetch the OIDC userinfo document for the token's subject."""
        client = self._build_client(token={"access_token": access_token, "token_type": "Bearer"})
        try:
            response = await client.get(self._userinfo_endpoint)
            response.raise_for_status()
            payload = dict(response.json())
        except Exception as exc:
            raise OAuthProtocolError(
                "OAuth profile request failed.", "oauth_profile_failed", 400
            ) from exc
        finally:
            await client.aclose()
        return ExternalOAuthUserProfile(
            subject_id=str(payload.get("sub") or ""),
            email=payload.get("email"),
            display_name=payload.get("name"),
        )

    def _require_configuration(self) -> None:
        if not self._client_id or not self._client_secret or not self._redirect_uri:
            raise OAuthProtocolError(
                "Google OAuth client is not configured.", "oauth_not_configured", 400
            )

    def _build_client(self, token: dict[str, str] | None = None) -> AsyncOAuth2Client:
        """Build authlib OAuth2 client for Google endpoints."""
        return AsyncOAuth2Client(
            client_id=self._client_id,
            client_secret=self._client_secret,
            scope=" ".join(self._scopes),
            redirect_uri=self._redirect_uri,
            token=token,
            token_endpoint_auth_method="client_secret_post",
            timeout=10.0,
        )


@lru_cache
def get_google_oauth_client() -> GoogleOAuthClient:
    """Build and cache Google OAuth client from settings."""
    settings = get_settings()
    redirect_uri = settings.oauth.google_redirect_uri
    return GoogleOAuthClient(
        client_id=settings.oauth.google_client_id,
        client_secret=settings.oauth.google_client_secret.get_secret_value(),
        redirect_uri=str(redirect_uri) if redirect_uri else None,
        authorization_endpoint=settings.oauth.google_authorization_endpoint,
        token_endpoint=settings.oauth.google_token_endpoint,
        userinfo_endpoint=settings.oauth.google_userinfo_endpoint,
        scopes=settings.oauth.google_scopes,
    )
