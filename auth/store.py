"""
auth/store.py -- SQLAlchemy Core persistence layer for users and roles.

Pattern: Repository + Data Mapper. UserStore and RoleStore are the
repositories; _row_to_user / _row_to_role are the mappers. Services and routes
never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL. Sort columns are
  looked up in a whitelist, never taken from raw input.

Role <-> user back-reference: users.role_id is indexed and RoleStore never
keeps a list of members. "Is this role in use?" is UserStore.count_by_role(),
one indexed COUNT(*).

Uniqueness (users.email, roles.name) is enforced by UNIQUE constraints. Two
concurrent creates with the same value: one wins, the other gets
sqlalchemy.exc.IntegrityError, which the directory services map to
DuplicateEmail / DuplicateRoleName.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Role, User
from core.db import build_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", String(200), nullable=False, server_default=""),
    Column("permissions", Text, nullable=False, server_default="[]"),  # JSON array
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("first_name", String(50), nullable=False),
    Column("last_name", String(50), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role_id", Integer, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(32)),
    Column("reset_password_token", Text),
    Column("reset_password_expires", String(32)),
    Column("avatar", Text),
    Column("gender", String(10)),
    Column("phone", String(30)),
    Column("date_of_birth", String(10)),  # YYYY-MM-DD
    Column("address", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

Index("ix_users_role_id", _users.c.role_id)
Index("ix_users_is_active", _users.c.is_active)

_USER_SORT_COLUMNS = {
    "created_at": _users.c.created_at,
    "updated_at": _users.c.updated_at,
    "email": _users.c.email,
    "first_name": _users.c.first_name,
    "last_name": _users.c.last_name,
    "last_login": _users.c.last_login,
}

_ROLE_SORT_COLUMNS = {
    "created_at": _roles.c.created_at,
    "updated_at": _roles.c.updated_at,
    "name": _roles.c.name,
}

# Columns update_user() accepts. Anything else is a programming error.
_USER_MUTABLE = frozenset(
    {
        "first_name",
        "last_name",
        "email",
        "hashed_password",
        "role_id",
        "is_active",
        "avatar",
        "gender",
        "phone",
        "date_of_birth",
        "address",
    }
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _order_by(columns: dict, sort_by: str, sort: str):
    column = columns.get(sort_by, columns["created_at"])
    return column.asc() if sort == "asc" else column.desc()


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class RoleStore:
    """Repository for Role entities.

    Usage:
        store = RoleStore("sqlite:///:memory:")
        role_id = store.create_role(Role(name="auditor", permissions=["audit:read"]))
        store.get_by_name("auditor")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = build_engine(db_url)
        metadata.create_all(self.engine)

    def create_role(self, role: Role) -> int:
        """Insert a role and return its ID. Raises IntegrityError on duplicate name."""
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    name=role.name,
                    description=role.description or "",
                    permissions=json.dumps(sorted(set(role.permissions))),
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(
        self,
        search: str | None = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        sort: str = "desc",
    ) -> tuple[list[Role], int]:
        """Return one page of roles plus the total match count.

        search is a case-insensitive substring match on name and description.
        """
        condition = None
        if search:
            pattern = f"%{search.lower()}%"
            condition = or_(func.lower(_roles.c.name).like(pattern), func.lower(_roles.c.description).like(pattern))
        query = _roles.select()
        count_query = select(func.count()).select_from(_roles)
        if condition is not None:
            query = query.where(condition)
            count_query = count_query.where(condition)
        query = query.order_by(_order_by(_ROLE_SORT_COLUMNS, sort_by, sort)).offset((page - 1) * limit).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_role(r) for r in rows], total

    def update_role(self, role_id: int, **fields) -> bool:
        """Update name, description and/or permissions. Returns False if not found."""
        if "permissions" in fields:
            fields["permissions"] = json.dumps(sorted(set(fields["permissions"])))
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, role_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user_id = store.create_user(User(first_name="Ada", last_name="L", email="ada@x.io",
                                         role_id=1, hashed_password=hash_password("secret")))
        user = store.get_by_email("ada@x.io")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = build_engine(db_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup: emails are stored lower-cased."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def count_by_role(self, role_id: int) -> int:
        """Number of users referencing role_id. Uses ix_users_role_id."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users).where(_users.c.role_id == role_id)).scalar()
        return result or 0

    def list_users(
        self,
        search: str | None = None,
        role_id: int | None = None,
        is_active: bool | None = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        sort: str = "desc",
    ) -> tuple[list[User], int]:
        """Return one page of users plus the total match count.

        search is a case-insensitive substring match on first name, last
        name and email.
        """
        conditions = []
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(
                or_(
                    func.lower(_users.c.first_name).like(pattern),
                    func.lower(_users.c.last_name).like(pattern),
                    _users.c.email.like(pattern),
                )
            )
        if role_id is not None:
            conditions.append(_users.c.role_id == role_id)
        if is_active is not None:
            conditions.append(_users.c.is_active == (1 if is_active else 0))

        query = _users.select()
        count_query = select(func.count()).select_from(_users)
        for condition in conditions:
            query = query.where(condition)
            count_query = count_query.where(condition)
        query = query.order_by(_order_by(_USER_SORT_COLUMNS, sort_by, sort)).offset((page - 1) * limit).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_user(r) for r in rows], total

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    first_name=user.first_name,
                    last_name=user.last_name,
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    role_id=user.role_id,
                    is_active=1 if user.is_active else 0,
                    avatar=user.avatar,
                    gender=user.gender,
                    phone=user.phone,
                    date_of_birth=user.date_of_birth,
                    address=user.address,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Returns True if a row was updated, False if user_id was not found.
        Raises ValueError for fields outside the mutable whitelist and
        IntegrityError when a new email collides.
        """
        unknown = set(fields) - _USER_MUTABLE
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> str:
        """Stamp and return the current UTC time as last_login."""
        stamp = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=stamp))
            conn.commit()
        return stamp

    def set_reset_token(self, user_id: int, token: str, expires_at: datetime) -> None:
        """Persist the one outstanding password-reset token for a user.

        Overwrites any earlier token, so only the most recent one can be used.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(reset_password_token=token, reset_password_expires=expires_at.isoformat())
            )
            conn.commit()

    def consume_reset_token(self, user_id: int, token: str, new_hash: str) -> bool:
        """Swap the password and clear the reset fields in one statement.

        The WHERE clause re-checks the stored token, so of two concurrent
        resets with the same token only one updates a row.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.reset_password_token == token))
                .values(
                    hashed_password=new_hash,
                    reset_password_token=None,
                    reset_password_expires=None,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Returns True if deleted."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description or "",
        permissions=json.loads(row.permissions or "[]"),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        hashed_password=row.hashed_password,
        role_id=row.role_id,
        is_active=bool(row.is_active),
        last_login=row.last_login,
        reset_password_token=row.reset_password_token,
        reset_password_expires=row.reset_password_expires,
        avatar=row.avatar,
        gender=row.gender,
        phone=row.phone,
        date_of_birth=row.date_of_birth,
        address=row.address,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
