"""Signed, time-boxed OAuth link state tokens."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from functools import lru_cache
from uuid import UUID

from iam.config import get_settings
from iam.core.clock import Clock, get_clock
from iam.models.external import normalize_provider

_SEPARATOR = "|"
_FIELD_COUNT = 5
_MAX_FUTURE_SKEW_SECONDS = 60


@dataclass(frozen=True)
class LinkStateValidation:
    """Outcome of validating a state token."""

    is_valid: bool
    user_id: UUID | None = None
    provider: str | None = None
    error: str | None = None

    @classmethod
    def invalid(cls, error: str) -> LinkStateValidation:
        return cls(is_valid=False, error=error)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded, altchars=b"-_", validate=True)


class ExternalLinkStateService:
    """Produce and verify `userId|provider|issuedAt|nonce|signature` state tokens.

    The whole token is base64url without padding. The signature is an
    HMAC-SHA256 over the first four fields.
    """

    def __init__(self, signing_key: str, ttl_seconds: int, clock: Clock) -> None:
        if not signing_key or not signing_key.strip():
            raise ValueError("External link state signing key is required.")
        self._key = signing_key.encode("utf-8")
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def create_state(self, user_id: UUID, provider: str) -> str:
        """Create an opaque state binding the user to the provider."""
        normalized_provider = normalize_provider(provider or "")
        if not normalized_provider:
            raise ValueError("Provider is required.")
        issued_at = int(self._clock.now().timestamp())
        nonce = secrets.token_urlsafe(16)
        payload = _SEPARATOR.join((str(user_id), normalized_provider, str(issued_at), nonce))
        token = f"{payload}{_SEPARATOR}{self._sign(payload)}"
        return _b64encode(token.encode("utf-8"))

    def validate_state(self, state: str | None) -> LinkStateValidation:
        """Verify encoding, signature, and age of a state token."""
        if not state or not state.strip():
            return LinkStateValidation.invalid("State is required.")
        try:
            raw = _b64decode(state.strip())
            decoded = raw.decode("utf-8")
        except (binascii.Error, ValueError):
            return LinkStateValidation.invalid("State is malformed.")
        # Non-canonical encodings (e.g. altered padding bits) are rejected.
        if _b64encode(raw) != state.strip():
            return LinkStateValidation.invalid("State is malformed.")

        parts = decoded.split(_SEPARATOR)
        if len(parts) != _FIELD_COUNT:
            return LinkStateValidation.invalid("State is malformed.")
        raw_user_id, provider, raw_issued_at, nonce, signature = parts

        try:
            user_id = UUID(raw_user_id)
        except ValueError:
            return LinkStateValidation.invalid("State user is invalid.")
        if not provider.strip():
            return LinkStateValidation.invalid("State provider is invalid.")
        try:
            issued_at = int(raw_issued_at)
        except ValueError:
            return LinkStateValidation.invalid("State timestamp is invalid.")

        payload = _SEPARATOR.join((raw_user_id, provider, raw_issued_at, nonce))
        expected = self._sign(payload).encode("ascii")
        if not hmac.compare_digest(expected, signature.encode("utf-8")):
            return LinkStateValidation.invalid("State signature is invalid.")

        age_seconds = int(self._clock.now().timestamp()) - issued_at
        if age_seconds < -_MAX_FUTURE_SKEW_SECONDS:
            return LinkStateValidation.invalid("State timestamp is invalid.")
        if age_seconds > self._ttl_seconds:
            return LinkStateValidation.invalid("State has expired.")

        return LinkStateValidation(is_valid=True, user_id=user_id, provider=provider)

    def _sign(self, payload: str) -> str:
        digest = hmac.new(self._key, payload.encode("utf-8"), hashlib.sha256).digest()
        return _b64encode(digest)


@lru_cache
def get_link_state_service() -> ExternalLinkStateService:
    """Build and cache the link state service from settings."""
    settings = get_settings()
    return ExternalLinkStateService(
        signing_key=settings.external_link.state_signing_key.get_secret_value(),
        ttl_seconds=settings.external_link.state_ttl_seconds,
        clock=get_clock(),
    )
