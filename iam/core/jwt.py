"""HS256 access token issuance and verification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any
from uuid import UUID, uuid4

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from iam.config import get_settings
from iam.core.clock import Clock, get_clock
from iam.models.user import User

JWT_ALGORITHM = "HS256"
DEFAULT_EXPIRY_MINUTES = 60
DEFAULT_ROLE = "User"


class TokenIssuerConfigurationError(Exception):
    """Raised at construction when signing configuration is incomplete."""


class TokenValidationError(Exception):
    """Raised when access token validation fails."""

    def __init__(self, detail: str, code: str) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code


@dataclass(frozen=True)
class TokenIssuerSettings:
    """Immutable signing parameters for the access token issuer."""

    issuer: str
    audience: str
    signing_key: str
    expiry_minutes: int | str | None = DEFAULT_EXPIRY_MINUTES


@dataclass(frozen=True)
class IssuedAccessToken:
    """Signed access token and its expiry instant."""

    access_token: str
    expires_at: datetime


@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified claims carried by an access token."""

    user_id: UUID
    username: str | None
    email: str | None
    roles: tuple[str, ...]
    jti: str
    expires_at: datetime

    def has_role(self, role: str) -> bool:
        wanted = role.casefold()
        return any(candidate.casefold() == wanted for candidate in self.roles)


def _resolve_expiry_minutes(value: int | str | None) -> int:
    """Return a positive minute count, falling back to the default."""
    if value is None or isinstance(value, bool):
        return DEFAULT_EXPIRY_MINUTES
    try:
        minutes = int(str(value).strip())
    except ValueError:
        return DEFAULT_EXPIRY_MINUTES
    return minutes if minutes > 0 else DEFAULT_EXPIRY_MINUTES


def distinct_role_names(role_names: list[str]) -> list[str]:
    """De-duplicate case-insensitively keeping the first spelling, then sort."""
    seen: set[str] = set()
    distinct: list[str] = []
    for name in role_names:
        cleaned = (name or "").strip()
        if not cleaned or cleaned.casefold() in seen:
            continue
        seen.add(cleaned.casefold())
        distinct.append(cleaned)
    return sorted(distinct, key=lambda name: (name.casefold(), name))


class AccessTokenIssuer:
    """Mints short-lived HS256 access tokens from constructor-held configuration."""

    def __init__(self, settings: TokenIssuerSettings, clock: Clock) -> None:
        missing = [
            name
            for name, value in (
                ("issuer", settings.issuer),
                ("audience", settings.audience),
                ("signing_key", settings.signing_key),
            )
            if not value or not value.strip()
        ]
        if missing:
            raise TokenIssuerConfigurationError(
                f"Access token signing configuration is incomplete: {', '.join(missing)}."
            )
        self._issuer = settings.issuer
        self._audience = settings.audience
        self._signing_key = settings.signing_key
        self._expiry = timedelta(minutes=_resolve_expiry_minutes(settings.expiry_minutes))
        self._clock = clock

    def build_claims(self, user: User, role_names: list[str]) -> list[tuple[str, str]]:
        """Build ordered claim pairs: subject, username, email, then sorted roles."""
        claims: list[tuple[str, str]] = [("sub", str(user.id))]
        username = (user.username or "").strip()
        email = (user.email or "").strip()
        preferred_username = username or email
        if preferred_username:
            claims.append(("preferred_username", preferred_username))
        if email:
            claims.append(("email", email))
        for role in distinct_role_names(role_names) or [DEFAULT_ROLE]:
            claims.append(("role", role))
        return claims

    def issue(self, user: User, role_names: list[str]) -> IssuedAccessToken:
        """Sign an access token for the user and its resolved role names."""
        issued_at = self._clock.now()
        expires_at = issued_at + self._expiry

        payload: dict[str, Any] = {}
        roles: list[str] = []
        for claim_type, value in self.build_claims(user, role_names):
            if claim_type == "role":
                roles.append(value)
            else:
                payload[claim_type] = value
        payload["role"] = roles
        payload["iss"] = self._issuer
        payload["aud"] = self._audience
        payload["iat"] = int(issued_at.timestamp())
        payload["exp"] = int(expires_at.timestamp())
        payload["jti"] = str(uuid4())

        token = jwt.encode(payload, self._signing_key, algorithm=JWT_ALGORITHM)
        return IssuedAccessToken(access_token=token, expires_at=expires_at)

    def verify(self, token: str) -> AccessTokenClaims:
        """Verify signature, issuer, audience, and expiry."""
        try:
            payload = jwt.decode(
                token,
                self._signing_key,
                algorithms=[JWT_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={"require_exp": True, "require_sub": True, "require_jti": True},
            )
        except ExpiredSignatureError as exc:
            raise TokenValidationError("Token has expired.", "token_expired") from exc
        except JWTError as exc:
            raise TokenValidationError("Invalid token.", "invalid_token") from exc

        try:
            user_id = UUID(str(payload["sub"]))
        except ValueError as exc:
            raise TokenValidationError("Invalid token subject.", "invalid_token") from exc

        raw_roles = payload.get("role", [])
        if isinstance(raw_roles, str):
            raw_roles = [raw_roles]
        return AccessTokenClaims(
            user_id=user_id,
            username=payload.get("preferred_username"),
            email=payload.get("email"),
            roles=tuple(str(role) for role in raw_roles),
            jti=str(payload["jti"]),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=UTC),
        )


@lru_cache
def get_access_token_issuer() -> AccessTokenIssuer:
    """Build and cache the access token issuer from settings."""
    settings = get_settings()
    return AccessTokenIssuer(
        settings=TokenIssuerSettings(
            issuer=settings.jwt.issuer,
            audience=settings.jwt.audience,
            signing_key=settings.jwt.signing_key.get_secret_value(),
            expiry_minutes=settings.jwt.expiry_minutes,
        ),
        clock=get_clock(),
    )
