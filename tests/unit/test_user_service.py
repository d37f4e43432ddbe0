"""Unit tests for role resolution and profile aggregation."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from uuid import uuid4

import pytest

from iam.core.jwt import AccessTokenClaims
from iam.core.results import Outcome, ServiceError
from iam.models.rbac import Group, GroupRole, Permission, Role, RolePermission, UserGroup
from iam.models.user import User, normalize_identifier
from iam.services.user_service import UserService
from tests.unit.fakes import InMemoryIdentityStore


def _role(name: str, *permissions: str) -> Role:
    role = Role(id=uuid4(), name=name, normalized_name=normalize_identifier(name))
    for permission in permissions:
        role.role_permissions.append(
            RolePermission(permission=Permission(id=uuid4(), name=permission))
        )
    return role


def _join_group(user: User, name: str, *roles: Role) -> None:
    group = Group(id=uuid4(), name=name)
    for role in roles:
        group.group_roles.append(GroupRole(role=role, role_id=role.id))
    user.user_groups.append(UserGroup(group=group, group_id=group.id))


def _principal(user: User) -> AccessTokenClaims:
    return AccessTokenClaims(
        user_id=user.id,
        username=user.username,
        email=user.email,
        roles=(),
        jti="jti",
        expires_at=datetime.now(UTC),
    )


def test_roles_include_group_roles_without_duplicates(make_user: Callable[..., User]) -> None:
    user = make_user(roles=["Admin"])
    _join_group(user, "Planners", _role("PlannerService"), _role("admin"))

    assert UserService().resolve_role_names(user) == ["Admin", "PlannerService"]


def test_profile_aggregates_groups_and_permissions(make_user: Callable[..., User]) -> None:
    user = make_user(password=None)
    editor = _role("Editor", "documents.write", "documents.read")
    viewer = _role("Viewer", "documents.read")
    _join_group(user, "Writers", editor, viewer)
    _join_group(user, "Readers", viewer)

    profile = UserService().build_profile(user)

    assert profile.id == user.id
    assert profile.roles == ["Editor", "Viewer"]
    assert profile.groups == ["Writers", "Readers"]
    assert profile.group_roles == {"Writers": ["Editor", "Viewer"], "Readers": ["Viewer"]}
    assert profile.permissions == ["documents.write", "documents.read"]


@pytest.mark.asyncio
async def test_lookup_by_identifier_is_case_insensitive(
    store: InMemoryIdentityStore, make_user: Callable[..., User]
) -> None:
    user = make_user()
    service = UserService()

    assert await service.get_user_by_identifier(store, " Existing ") is user
    assert await service.get_user_by_identifier(store, "EXISTING@EXAMPLE.COM") is user
    assert await service.get_user_by_identifier(store, "") is None


@pytest.mark.asyncio
async def test_current_profile_for_deleted_user_is_not_found(
    store: InMemoryIdentityStore, make_user: Callable[..., User]
) -> None:
    user = make_user(is_deleted=True)

    with pytest.raises(ServiceError) as exc_info:
        await UserService().get_current_profile(store, _principal(user))

    assert exc_info.value.outcome is Outcome.NOT_FOUND


@pytest.mark.asyncio
async def test_current_profile_returns_ok_result(
    store: InMemoryIdentityStore, make_user: Callable[..., User]
) -> None:
    user = make_user(roles=["User"])

    result = await UserService().get_current_profile(store, _principal(user))

    assert result.success
    assert result.data is not None
    assert result.data.username == "existing"
    assert result.data.roles == ["User"]
