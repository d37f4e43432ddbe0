"""CLI entrypoints for identity service operational tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence

from iam.config import configure_structlog, get_settings
from iam.db.session import dispose_engine, get_session_factory
from iam.db.store import IdentityStore, StoreConflictError
from iam.models.rbac import Role, UserRole
from iam.models.user import normalize_identifier


async def _run_create_role(name: str, description: str | None) -> int:
    """Create a role unless one with the same normalized name exists."""
    cleaned = name.strip()
    if not cleaned:
        print(json.dumps({"error": "Role name is required."}))
        return 1
    async with get_session_factory()() as db_session:
        store = IdentityStore(db_session)
        if await store.get_role_by_name(normalize_identifier(cleaned)) is not None:
            print(json.dumps({"error": "Role already exists.", "role": cleaned}))
            return 1
        role = Role(
            name=cleaned,
            normalized_name=normalize_identifier(cleaned),
            description=description,
        )
        store.add(role)
        try:
            await store.flush()
            await store.commit()
        except StoreConflictError:
            print(json.dumps({"error": "Role already exists.", "role": cleaned}))
            return 1
        print(json.dumps({"role_id": str(role.id), "role": role.name}))
    return 0


async def _run_assign_role(identifier: str, role_name: str) -> int:
    """Grant a role directly to a user found by username or email."""
    async with get_session_factory()() as db_session:
        store = IdentityStore(db_session)
        user = await store.get_user_by_identifier(normalize_identifier(identifier))
        if user is None or user.is_deleted:
            print(json.dumps({"error": "User not found.", "user": identifier}))
            return 1
        role = await store.get_role_by_name(normalize_identifier(role_name))
        if role is None:
            print(json.dumps({"error": "Role not found.", "role": role_name}))
            return 1
        if any(grant.role_id == role.id for grant in user.user_roles):
            print(json.dumps({"error": "Role is already assigned.", "role": role.name}))
            return 1
        store.add(UserRole(user_id=user.id, role_id=role.id))
        try:
            await store.commit()
        except StoreConflictError:
            print(json.dumps({"error": "Role is already assigned.", "role": role.name}))
            return 1
        print(json.dumps({"user_id": str(user.id), "role": role.name}))
    return 0


async def _run(coroutine) -> int:
    try:
        return await coroutine
    finally:
        await dispose_engine()


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="python -m iam.cli")
    subcommands = parser.add_subparsers(dest="command", required=True)

    create_role = subcommands.add_parser("create-role")
    create_role.add_argument("--name", required=True)
    create_role.add_argument("--description", default=None)

    assign_role = subcommands.add_parser("assign-role")
    assign_role.add_argument("--user", required=True, help="Username or email.")
    assign_role.add_argument("--role", required=True)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_structlog(get_settings())
    if args.command == "create-role":
        return asyncio.run(_run(_run_create_role(args.name, args.description)))
    if args.command == "assign-role":
        return asyncio.run(_run(_run_assign_role(args.user, args.role)))
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
