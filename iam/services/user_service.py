"""User lookup, role resolution, and profile aggregation."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from uuid import UUID

from iam.core.jwt import AccessTokenClaims
from iam.core.results import ServiceError, ServiceResult
from iam.db.store import IdentityStore
from iam.models.rbac import Role
from iam.models.user import User, normalize_identifier


@dataclass(frozen=True)
class UserProfile:
    """Current user's identity with effective roles and permissions."""

    id: UUID
    username: str | None
    email: str | None
    email_confirmed: bool
    two_factor_enabled: bool
    roles: list[str] = field(default_factory=list)
    groups: list[str] = field(default_factory=list)
    group_roles: dict[str, list[str]] = field(default_factory=dict)
    permissions: list[str] = field(default_factory=list)


class _OrderedNames:
    """Case-insensitive de-duplicating list preserving first appearance."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self.items: list[str] = []

    def add(self, name: str | None) -> None:
        cleaned = (name or "").strip()
        if cleaned and cleaned.casefold() not in self._seen:
            self._seen.add(cleaned.casefold())
            self.items.append(cleaned)


class UserService:
    """Service responsible for user retrieval and access aggregation."""

    async def get_user_by_identifier(self, store: IdentityStore, identifier: str) -> User | None:
        """Fetch a user by username or email, case-insensitively."""
        normalized = normalize_identifier(identifier or "")
        if not normalized:
            return None
        return await store.get_user_by_identifier(normalized)

    def resolve_role_names(self, user: User) -> list[str]:
        """Return direct roles followed by group-inherited roles, de-duplicated."""
        names = _OrderedNames()
        for role in self._effective_roles(user):
            names.add(role.name)
        return names.items

    def build_profile(self, user: User) -> UserProfile:
        """Aggregate roles, groups, and permissions from direct and group grants."""
        groups = _OrderedNames()
        group_roles: dict[str, list[str]] = {}
        for membership in user.user_groups:
            group = membership.group
            if group is None:
                continue
            groups.add(group.name)
            names = _OrderedNames()
            for grant in group.group_roles:
                if grant.role is not None:
                    names.add(grant.role.name)
            group_roles.setdefault(group.name, names.items)

        permissions = _OrderedNames()
        for role in self._effective_roles(user):
            for grant in role.role_permissions:
                if grant.permission is not None:
                    permissions.add(grant.permission.name)

        return UserProfile(
            id=user.id,
            username=user.username,
            email=user.email,
            email_confirmed=user.email_confirmed,
            two_factor_enabled=user.two_factor_enabled,
            roles=self.resolve_role_names(user),
            groups=groups.items,
            group_roles=group_roles,
            permissions=permissions.items,
        )

    async def get_current_profile(
        self, store: IdentityStore, principal: AccessTokenClaims
    ) -> ServiceResult[UserProfile]:
        """Return the authenticated caller's profile."""
        user = await store.get_user_by_id(principal.user_id)
        if user is None or user.is_deleted:
            raise ServiceError.not_found("User not found.")
        return ServiceResult.ok(self.build_profile(user))

    @staticmethod
    def _effective_roles(user: User) -> list[Role]:
        roles = [grant.role for grant in user.user_roles if grant.role is not None]
        for membership in user.user_groups:
            if membership.group is None:
                continue
            roles.extend(
                grant.role for grant in membership.group.group_roles if grant.role is not None
            )
        return roles


@lru_cache
def get_user_service() -> UserService:
    """Create and cache user service."""
    return UserService()
