"""Reversible at-rest encryption for external provider tokens."""

from __future__ import annotations

import base64
import hashlib
from functools import lru_cache
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from iam.config import get_settings


class TokenProtectionError(Exception):
    """Raised when a stored value cannot be unprotected."""


class TokenProtector(Protocol):
    """Reversible, key-managed protection for secrets stored at rest."""

    def protect(self, value: str) -> str: ...

    def unprotect(self, value: str) -> str: ...


class FernetTokenProtector:
    """Fernet-backed protector producing `v1:`-prefixed ciphertext."""

    _ENCRYPTION_PREFIX = "v1:"

    def __init__(self, encryption_key: str) -> None:
        if not encryption_key or not encryption_key.strip():
            raise ValueError("Token protection key is required.")
        self._fernet = Fernet(self._build_fernet_key(encryption_key))

    def protect(self, value: str) -> str:
        """Encrypt a plaintext token before persistence."""
        if not value or not value.strip():
            raise ValueError("Value to protect must not be blank.")
        encrypted = self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")
        return f"{self._ENCRYPTION_PREFIX}{encrypted}"

    def unprotect(self, value: str) -> str:
        """Decrypt a stored token."""
        if not value or not value.strip():
            raise ValueError("Value to unprotect must not be blank.")
        if not value.startswith(self._ENCRYPTION_PREFIX):
            raise TokenProtectionError("Protected value has an unknown format.")
        token = value[len(self._ENCRYPTION_PREFIX) :]
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise TokenProtectionError("Unable to unprotect token.") from exc

    @staticmethod
    def _build_fernet_key(encryption_key: str) -> bytes:
        """Derive a valid fernet key from arbitrary secret material."""
        digest = hashlib.sha256(encryption_key.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest)


@lru_cache
def get_token_protector() -> TokenProtector:
    """Build and cache the token protector from settings."""
    settings = get_settings()
    return FernetTokenProtector(settings.token_protection.encryption_key.get_secret_value())
