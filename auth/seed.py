#!/usr/bin/env python3
"""
auth/seed.py -- Default roles and the initial super-admin account.

ensure_default_roles() is idempotent: it creates only the roles that are
missing and never edits an existing one. It runs on every API startup.

Usage:
  python -m auth.seed --email admin@example.com --password 'S3cretPass'
  DATABASE_URL=sqlite:///./accessgate.db python -m auth.seed --email ... --password ...
"""

from __future__ import annotations

import argparse
import logging
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import Role, User
from auth.permissions import UNIVERSAL
from auth.store import RoleStore, UserStore
from auth.tokens import hash_password
from core.config import Settings, get_settings

logger = logging.getLogger("accessgate.seed")

DEFAULT_ROLES: list[dict] = [
    {
        "name": "super-admin",
        "description": "Full system access",
        "permissions": [UNIVERSAL],
    },
    {
        "name": "admin",
        "description": "Administrative access to users, roles and audit logs",
        "permissions": ["user:*", "role:*", "audit:read"],
    },
    {
        "name": "moderator",
        "description": "Can view and update users",
        "permissions": ["user:read", "user:update", "audit:read"],
    },
    {
        "name": "user",
        "description": "Basic user access",
        "permissions": ["user:read:self", "user:update:self", "audit:read:self"],
    },
]


def ensure_default_roles(roles: RoleStore, super_role_name: str = "super-admin") -> dict[str, Role]:
    """Create any missing default role. Returns all default roles by name."""
    result: dict[str, Role] = {}
    for default in DEFAULT_ROLES:
        name = super_role_name if default["name"] == "super-admin" else default["name"]
        role = roles.get_by_name(name)
        if role is None:
            try:
                roles.create_role(Role(name=name, permissions=default["permissions"], description=default["description"]))
                logger.info("Default role created: %s", name)
            except IntegrityError:
                # Another worker created it between the lookup and the insert.
                pass
            role = roles.get_by_name(name)
        result[name] = role
    return result


def ensure_admin(
    users: UserStore,
    roles: RoleStore,
    email: str,
    password: str,
    super_role_name: str = "super-admin",
    bcrypt_rounds: int = 12,
) -> tuple[User, bool]:
    """Create the super-admin account unless the email is already taken.

    Returns (user, created).
    """
    existing = users.get_by_email(email)
    if existing is not None:
        return existing, False
    role = roles.get_by_name(super_role_name)
    if role is None:
        raise RuntimeError(f"Role {super_role_name!r} not found; run ensure_default_roles() first")
    user_id = users.create_user(
        User(
            first_name="Super",
            last_name="Admin",
            email=email,
            role_id=role.id,
            hashed_password=hash_password(password, bcrypt_rounds),
        )
    )
    logger.info("Super-admin account created: id=%s", user_id)
    return users.get_by_id(user_id), True


def seed_defaults(users: UserStore, roles: RoleStore, settings: Settings) -> None:
    """Startup seeding: default roles, plus the admin when ADMIN_EMAIL/ADMIN_PASSWORD are set."""
    ensure_default_roles(roles, settings.super_role_name)
    if settings.admin_email and settings.admin_password:
        ensure_admin(
            users,
            roles,
            settings.admin_email,
            settings.admin_password,
            super_role_name=settings.super_role_name,
            bcrypt_rounds=settings.bcrypt_rounds,
        )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="accessgate-seed",
        description="Create the default roles and an initial super-admin account.",
    )
    parser.add_argument("--email", required=True, help="Email of the super-admin account")
    parser.add_argument("--password", required=True, help="Initial password (change it after first login)")
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy URL (default: DATABASE_URL setting)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")
    settings = get_settings()
    db_url = args.database_url or settings.database_url
    users = UserStore(db_url)
    roles = RoleStore(db_url)
    try:
        created_roles = ensure_default_roles(roles, settings.super_role_name)
        user, created = ensure_admin(
            users,
            roles,
            args.email,
            args.password,
            super_role_name=settings.super_role_name,
            bcrypt_rounds=settings.bcrypt_rounds,
        )
    finally:
        users.close()
        roles.close()

    print(f"  Roles: {', '.join(sorted(created_roles))}")
    if created:
        print(f"  Super-admin created: {user.email} (id={user.id})")
    else:
        print(f"  [!] {user.email} already exists; nothing changed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
