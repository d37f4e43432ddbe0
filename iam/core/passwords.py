"""Password hashing and verification."""

from __future__ import annotations

from functools import lru_cache

from passlib.context import CryptContext

from iam.models.user import User


class PasswordHasher:
    """bcrypt-backed credential verifier."""

    def __init__(self) -> None:
        self._context = CryptContext(schemes=["bcrypt"], deprecated="auto")

    def hash(self, user: User, password: str) -> str:
        """Hash a plaintext password for the given user."""
        return self._context.hash(password)

    def verify(self, user: User, password_hash: str, password: str) -> bool:
        """Return True when the plaintext matches the stored hash."""
        try:
            return bool(self._context.verify(password, password_hash))
        except ValueError:
            # Malformed or unknown hash formats never authenticate.
            return False

    def dummy_verify(self) -> None:
        """Spend a verify's worth of time when no user matched."""
        self._context.dummy_verify()


@lru_cache
def get_password_hasher() -> PasswordHasher:
    """Create and cache the password hasher."""
    return PasswordHasher()
