"""Opaque refresh token generation, hashing, and comparison primitives."""

from __future__ import annotations

import hmac
import secrets
from hashlib import sha256


class RefreshTokenCore:
    """Core refresh token operations; only hashes are ever persisted."""

    _RANDOM_BYTES = 64

    def generate(self) -> str:
        """Generate a URL-safe opaque token from 64 random bytes."""
        return secrets.token_urlsafe(self._RANDOM_BYTES)

    def hash(self, raw_token: str) -> str:
        """Hash raw refresh token using SHA-256 hex digest."""
        return sha256(raw_token.encode("utf-8")).hexdigest()

    def matches(self, expected_hash: str, raw_token: str) -> bool:
        """Constant-time compare between stored hash and raw token hash."""
        return hmac.compare_digest(expected_hash, self.hash(raw_token))
