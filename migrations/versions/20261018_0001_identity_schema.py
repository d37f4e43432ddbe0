"""Identity, RBAC, session, and external link schema."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _uuid(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), nullable=nullable)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    ]


def _fk(table: str, column: str, referred: str, ondelete: str = "CASCADE"):
    return sa.ForeignKeyConstraint(
        [column],
        [f"{referred}.id"],
        name=f"fk_{table}_{column}_{referred}",
        ondelete=ondelete,
    )


def upgrade() -> None:
    """Create all identity service tables."""
    op.create_table(
        "users",
        _uuid("id"),
        sa.Column("username", sa.String(length=256), nullable=True),
        sa.Column("normalized_username", sa.String(length=256), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("normalized_email", sa.String(length=320), nullable=True),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column("email_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("two_factor_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("access_failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("password_reset_token", sa.String(length=255), nullable=True),
        sa.Column("password_reset_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("normalized_username", name="uq_users_normalized_username"),
        sa.UniqueConstraint("normalized_email", name="uq_users_normalized_email"),
    )

    op.create_table(
        "roles",
        _uuid("id"),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("normalized_name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.String(length=512), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_roles"),
        sa.UniqueConstraint("normalized_name", name="uq_roles_normalized_name"),
    )
    op.create_table(
        "permissions",
        _uuid("id"),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.String(length=512), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_permissions"),
        sa.UniqueConstraint("name", name="uq_permissions_name"),
    )
    op.create_table(
        "groups",
        _uuid("id"),
        sa.Column("name", sa.String(length=128), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_groups"),
        sa.UniqueConstraint("name", name="uq_groups_name"),
    )
    op.create_table(
        "role_permissions",
        _uuid("role_id"),
        _uuid("permission_id"),
        _fk("role_permissions", "role_id", "roles"),
        _fk("role_permissions", "permission_id", "permissions"),
        sa.PrimaryKeyConstraint("role_id", "permission_id", name="pk_role_permissions"),
    )
    op.create_table(
        "user_roles",
        _uuid("user_id"),
        _uuid("role_id"),
        _fk("user_roles", "user_id", "users"),
        _fk("user_roles", "role_id", "roles"),
        sa.PrimaryKeyConstraint("user_id", "role_id", name="pk_user_roles"),
    )
    op.create_table(
        "group_roles",
        _uuid("group_id"),
        _uuid("role_id"),
        _fk("group_roles", "group_id", "groups"),
        _fk("group_roles", "role_id", "roles"),
        sa.PrimaryKeyConstraint("group_id", "role_id", name="pk_group_roles"),
    )
    op.create_table(
        "user_groups",
        _uuid("user_id"),
        _uuid("group_id"),
        _fk("user_groups", "user_id", "users"),
        _fk("user_groups", "group_id", "groups"),
        sa.PrimaryKeyConstraint("user_id", "group_id", name="pk_user_groups"),
    )

    op.create_table(
        "sessions",
        _uuid("id"),
        _uuid("user_id"),
        sa.Column("hashed_refresh_token", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("device_name", sa.String(length=256), nullable=True),
        *_timestamps(),
        _fk("sessions", "user_id", "users"),
        sa.PrimaryKeyConstraint("id", name="pk_sessions"),
        sa.UniqueConstraint("hashed_refresh_token", name="uq_sessions_hashed_refresh_token"),
    )
    op.create_index("ix_sessions_user_id_is_revoked", "sessions", ["user_id", "is_revoked"])

    op.create_table(
        "login_attempts",
        _uuid("id"),
        _uuid("user_id", nullable=True),
        sa.Column("identifier", sa.String(length=320), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("is_successful", sa.Boolean(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        _fk("login_attempts", "user_id", "users", ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id", name="pk_login_attempts"),
    )
    op.create_index(
        "ix_login_attempts_user_id_attempted_at", "login_attempts", ["user_id", "attempted_at"]
    )

    op.create_table(
        "external_identities",
        _uuid("id"),
        _uuid("user_id"),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("subject_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("display_name", sa.String(length=256), nullable=True),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=False),
        _fk("external_identities", "user_id", "users"),
        sa.PrimaryKeyConstraint("id", name="pk_external_identities"),
        sa.UniqueConstraint(
            "provider", "subject_id", name="uq_external_identities_provider_subject"
        ),
        sa.UniqueConstraint("user_id", "provider", name="uq_external_identities_user_provider"),
    )
    op.create_table(
        "external_tokens",
        _uuid("id"),
        _uuid("user_id"),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scopes", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        _fk("external_tokens", "user_id", "users"),
        sa.PrimaryKeyConstraint("id", name="pk_external_tokens"),
        sa.UniqueConstraint("user_id", "provider", name="uq_external_tokens_user_provider"),
    )


def downgrade() -> None:
    """Drop all identity service tables."""
    op.drop_table("external_tokens")
    op.drop_table("external_identities")
    op.drop_index("ix_login_attempts_user_id_attempted_at", table_name="login_attempts")
    op.drop_table("login_attempts")
    op.drop_index("ix_sessions_user_id_is_revoked", table_name="sessions")
    op.drop_table("sessions")
    for table in ("user_groups", "group_roles", "user_roles", "role_permissions"):
        op.drop_table(table)
    for table in ("groups", "permissions", "roles", "users"):
        op.drop_table(table)
