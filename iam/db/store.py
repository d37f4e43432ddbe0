"""Query and persistence gateway used by identity services."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from iam.models.external import ExternalIdentity, ExternalToken
from iam.models.rbac import Group, GroupRole, Role, RolePermission, UserGroup, UserRole
from iam.models.session import Session
from iam.models.user import User


class StoreConflictError(Exception):
    """Raised when a flush or commit violates a store-level uniqueness constraint."""

    def __init__(self, detail: str = "A conflicting record already exists.") -> None:
        super().__init__(detail)
        self.detail = detail


def _user_with_access_graph():
    """Return a User select eagerly loading roles, groups, and permissions."""
    return select(User).options(
        selectinload(User.user_roles)
        .selectinload(UserRole.role)
        .selectinload(Role.role_permissions)
        .selectinload(RolePermission.permission),
        selectinload(User.user_groups)
        .selectinload(UserGroup.group)
        .selectinload(Group.group_roles)
        .selectinload(GroupRole.role)
        .selectinload(Role.role_permissions)
        .selectinload(RolePermission.permission),
    )


class IdentityStore:
    """Request-scoped gateway over one AsyncSession.

    `commit()` is the single durability point: every mutation staged through
    `add()`/`delete()` within a request is written together or not at all.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_user_by_id(self, user_id: UUID) -> User | None:
        """Fetch a user and its access graph by primary key."""
        result = await self._db.execute(_user_with_access_graph().where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_user_by_identifier(self, normalized_identifier: str) -> User | None:
        """Fetch a user by normalized username or normalized email."""
        statement = _user_with_access_graph().where(
            or_(
                User.normalized_username == normalized_identifier,
                User.normalized_email == normalized_identifier,
            )
        )
        result = await self._db.execute(statement.limit(1))
        return result.scalar_one_or_none()

    async def get_user_by_email(self, normalized_email: str) -> User | None:
        """Fetch a user by normalized email."""
        result = await self._db.execute(
            select(User).where(User.normalized_email == normalized_email)
        )
        return result.scalar_one_or_none()

    async def user_exists(self, normalized_username: str, normalized_email: str) -> bool:
        """Return True when either normalized value is already taken."""
        result = await self._db.execute(
            select(User.id)
            .where(
                or_(
                    User.normalized_username == normalized_username,
                    User.normalized_email == normalized_email,
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def get_role_by_name(self, normalized_name: str) -> Role | None:
        """Fetch a role by normalized name."""
        result = await self._db.execute(select(Role).where(Role.normalized_name == normalized_name))
        return result.scalar_one_or_none()

    async def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Session | None:
        """Fetch a session row by hashed refresh token, locking it for update."""
        result = await self._db.execute(
            select(Session)
            .where(Session.hashed_refresh_token == refresh_token_hash)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_session_by_id(self, session_id: UUID) -> Session | None:
        """Fetch a session row by id."""
        result = await self._db.execute(select(Session).where(Session.id == session_id))
        return result.scalar_one_or_none()

    async def list_sessions_for_user(self, user_id: UUID) -> list[Session]:
        """List a user's sessions, newest expiry first."""
        result = await self._db.execute(
            select(Session).where(Session.user_id == user_id).order_by(Session.expires_at.desc())
        )
        return list(result.scalars().all())

    async def get_external_identity(self, user_id: UUID, provider: str) -> ExternalIdentity | None:
        """Fetch a user's link for one provider."""
        result = await self._db.execute(
            select(ExternalIdentity).where(
                ExternalIdentity.user_id == user_id,
                ExternalIdentity.provider == provider,
            )
        )
        return result.scalar_one_or_none()

    async def get_external_identity_by_subject(
        self, provider: str, subject_id: str
    ) -> ExternalIdentity | None:
        """Fetch the link owning a provider subject, whichever user holds it."""
        result = await self._db.execute(
            select(ExternalIdentity).where(
                ExternalIdentity.provider == provider,
                ExternalIdentity.subject_id == subject_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_external_identities(
        self, user_id: UUID, provider: str | None = None
    ) -> list[ExternalIdentity]:
        """List a user's links ordered by provider."""
        statement = select(ExternalIdentity).where(ExternalIdentity.user_id == user_id)
        if provider:
            statement = statement.where(ExternalIdentity.provider == provider)
        result = await self._db.execute(statement.order_by(ExternalIdentity.provider))
        return list(result.scalars().all())

    async def get_external_token(self, user_id: UUID, provider: str) -> ExternalToken | None:
        """Fetch the protected token row for (user, provider), bypassing the identity map."""
        result = await self._db.execute(
            select(ExternalToken)
            .where(ExternalToken.user_id == user_id, ExternalToken.provider == provider)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def add(self, instance: object) -> None:
        """Stage a new row."""
        self._db.add(instance)

    async def delete(self, instance: object) -> None:
        """Stage a row for deletion."""
        await self._db.delete(instance)

    async def flush(self) -> None:
        """Flush staged changes without committing, translating unique violations."""
        try:
            await self._db.flush()
        except IntegrityError as exc:
            await self._db.rollback()
            raise StoreConflictError() from exc

    async def commit(self) -> None:
        """Commit staged changes, translating unique violations."""
        try:
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise StoreConflictError() from exc
