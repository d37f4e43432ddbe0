"""Identity ORM model."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from iam.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from iam.models.external import ExternalIdentity, ExternalToken
    from iam.models.rbac import UserGroup, UserRole
    from iam.models.session import Session


def normalize_identifier(value: str) -> str:
    """Return the case-insensitive lookup form of a username or email."""
    return value.strip().upper()


class User(Base, TimestampMixin):
    """User account with credentials and status flags; never hard-deleted."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    username: Mapped[str | None] = mapped_column(String(256), nullable=True)
    normalized_username: Mapped[str | None] = mapped_column(
        String(256), nullable=True, unique=True
    )
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    normalized_email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    access_failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    password_reset_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_reset_token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    user_roles: Mapped[list[UserRole]] = relationship(back_populates="user")
    user_groups: Mapped[list[UserGroup]] = relationship(back_populates="user")
    sessions: Mapped[list[Session]] = relationship(back_populates="user")
    external_identities: Mapped[list[ExternalIdentity]] = relationship(back_populates="user")
    external_tokens: Mapped[list[ExternalToken]] = relationship(back_populates="user")

    @property
    def is_available(self) -> bool:
        """Return True when the account may authenticate or link providers."""
        return not self.is_deleted and not self.is_locked
