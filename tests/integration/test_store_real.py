"""Integration tests for the identity store against real Postgres."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from iam.db.store import IdentityStore, StoreConflictError
from iam.models import ExternalIdentity, ExternalToken, Role, User, UserRole
from iam.models.user import normalize_identifier


def _user(username: str, email: str) -> User:
    return User(
        username=username,
        normalized_username=normalize_identifier(username),
        email=email,
        normalized_email=normalize_identifier(email),
        email_confirmed=False,
        two_factor_enabled=False,
        access_failed_count=0,
        is_locked=False,
        is_deleted=False,
    )


@pytest.mark.asyncio
async def test_duplicate_normalized_username_raises_conflict(db_session: AsyncSession) -> None:
    store = IdentityStore(db_session)
    store.add(_user("frank", "frank@example.com"))
    await store.commit()

    store.add(_user("FRANK", "other@example.com"))
    with pytest.raises(StoreConflictError):
        await store.commit()

    assert await store.user_exists("FRANK", "NOBODY@EXAMPLE.COM")


@pytest.mark.asyncio
async def test_identifier_lookup_loads_roles(db_session: AsyncSession) -> None:
    store = IdentityStore(db_session)
    user = _user("grace", "grace@example.com")
    role = Role(name="PlannerService", normalized_name="PLANNERSERVICE")
    store.add(user)
    store.add(role)
    await store.flush()
    store.add(UserRole(user_id=user.id, role_id=role.id))
    await store.commit()
    db_session.expunge_all()

    loaded = await store.get_user_by_identifier("GRACE@EXAMPLE.COM")

    assert loaded is not None
    assert [grant.role.name for grant in loaded.user_roles] == ["PlannerService"]


@pytest.mark.asyncio
async def test_one_external_token_row_per_user_and_provider(db_session: AsyncSession) -> None:
    store = IdentityStore(db_session)
    user = _user("heidi", "heidi@example.com")
    store.add(user)
    await store.flush()
    user_id = user.id
    now = datetime.now(UTC)
    store.add(
        ExternalIdentity(
            user_id=user_id, provider="google", subject_id="subject-1", linked_at=now
        )
    )
    for access_token in ("v1:first", "v1:second"):
        store.add(
            ExternalToken(
                user_id=user_id,
                provider="google",
                access_token=access_token,
                refresh_token="v1:refresh",
                expires_at=now + timedelta(hours=1),
                scopes="openid",
                updated_at=now,
            )
        )

    with pytest.raises(StoreConflictError):
        await store.commit()
    assert await store.get_external_token(user_id, "google") is None
