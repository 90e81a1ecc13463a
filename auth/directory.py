"""
auth/directory.py -- User and role management services.

RoleService and UserService hold the invariants the stores cannot express:

  * the super role (SUPER_ROLE_NAME, default "super-admin") always carries
    "*:*", is never renamed and never deleted
  * a role referenced by any user cannot be deleted (indexed COUNT(*), no
    back-pointer list on the role)
  * every stored permission string is well-formed
  * a user can never delete their own account
  * every user references an existing role

Uniqueness races are settled by the store's UNIQUE constraints; the
IntegrityError from the losing writer becomes DuplicateEmail /
DuplicateRoleName here.

Audit records for these operations come from the @audited decorators on the
HTTP endpoints, not from this module.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError

from auth.models import Role, User
from auth.permissions import PERMISSION_CATALOGUE, UNIVERSAL, is_valid_permission
from auth.store import RoleStore, UserStore
from auth.tokens import hash_password
from core.errors import (
    DuplicateEmail,
    DuplicateRoleName,
    InvalidInput,
    NotFound,
    ProtectedRoleViolation,
    RoleInUse,
    SelfDeletionForbidden,
)

logger = logging.getLogger("accessgate.directory")

# Fields a user may change on their own profile.
PROFILE_FIELDS = frozenset({"first_name", "last_name", "avatar", "gender", "phone", "date_of_birth", "address"})

# Fields an administrator may change through update_user().
ADMIN_USER_FIELDS = PROFILE_FIELDS | {"email", "role_id", "is_active", "password"}

# Backed by NOT NULL columns; None is never a valid new value.
REQUIRED_USER_FIELDS = frozenset({"first_name", "last_name", "email", "role_id", "is_active", "password"})


def _check_permissions(permissions: Iterable[str]) -> list[str]:
    permissions = list(permissions)
    invalid = [p for p in permissions if not is_valid_permission(p)]
    if invalid:
        raise InvalidInput(f"Invalid permission format: {', '.join(map(str, invalid))}")
    return sorted(set(permissions))


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class RoleService:
    def __init__(self, roles: RoleStore, users: UserStore, super_role_name: str = "super-admin") -> None:
        self.roles = roles
        self.users = users
        self.super_role_name = super_role_name

    def list_roles(self, **query) -> tuple[list[Role], int]:
        return self.roles.list_roles(**query)

    def get_role(self, role_id: int) -> Role:
        role = self.roles.get_by_id(role_id)
        if role is None:
            raise NotFound("Role not found.")
        return role

    def users_in_role(self, role_id: int, page: int = 1, limit: int = 10) -> tuple[Role, list[User], int]:
        role = self.get_role(role_id)
        users, total = self.users.list_users(role_id=role.id, page=page, limit=limit)
        return role, users, total

    def permission_catalogue(self) -> list[dict]:
        return PERMISSION_CATALOGUE

    def create_role(self, name: str, permissions: Iterable[str], description: str = "") -> Role:
        permissions = _check_permissions(permissions)
        if self.roles.get_by_name(name) is not None:
            raise DuplicateRoleName()
        try:
            role_id = self.roles.create_role(Role(name=name, permissions=permissions, description=description or ""))
        except IntegrityError:
            raise DuplicateRoleName() from None
        logger.info("Role created: id=%s name=%s", role_id, name)
        return self.get_role(role_id)

    def update_role(
        self,
        role_id: int,
        name: str | None = None,
        description: str | None = None,
        permissions: Iterable[str] | None = None,
    ) -> Role:
        role = self.get_role(role_id)
        updates: dict = {}

        if name is not None and name != role.name:
            if role.name == self.super_role_name:
                raise ProtectedRoleViolation("The super-admin role cannot be renamed.")
            existing = self.roles.get_by_name(name)
            if existing is not None and existing.id != role.id:
                raise DuplicateRoleName()
            updates["name"] = name
        if description is not None:
            updates["description"] = description
        if permissions is not None:
            permissions = _check_permissions(permissions)
            if role.name == self.super_role_name and UNIVERSAL not in permissions:
                raise ProtectedRoleViolation(f"The super-admin role must keep the '{UNIVERSAL}' permission.")
            updates["permissions"] = permissions

        if not updates:
            raise InvalidInput("No fields to update.")
        try:
            self.roles.update_role(role.id, **updates)
        except IntegrityError:
            raise DuplicateRoleName() from None
        return self.get_role(role.id)

    def delete_role(self, role_id: int) -> Role:
        """Delete a role and return it as it was. Checks run before any write."""
        role = self.get_role(role_id)
        if role.name == self.super_role_name:
            raise ProtectedRoleViolation("The super-admin role cannot be deleted.")
        assigned = self.users.count_by_role(role.id)
        if assigned > 0:
            raise RoleInUse(f"Cannot delete role. {assigned} user(s) are assigned to this role.")
        self.roles.delete_role(role.id)
        logger.info("Role deleted: id=%s name=%s", role.id, role.name)
        return role


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserService:
    def __init__(self, users: UserStore, roles: RoleStore, bcrypt_rounds: int = 12) -> None:
        self.users = users
        self.roles = roles
        self.bcrypt_rounds = bcrypt_rounds

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_users(
        self,
        search: str | None = None,
        role: str | None = None,
        is_active: bool | None = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        sort: str = "desc",
    ) -> tuple[list[User], int]:
        """Page of users. role filters by role *name*; an unknown name matches nothing."""
        role_id = None
        if role:
            match = self.roles.get_by_name(role)
            if match is None:
                return [], 0
            role_id = match.id
        return self.users.list_users(
            search=search,
            role_id=role_id,
            is_active=is_active,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort=sort,
        )

    def get_user(self, user_id: int) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def to_public(self, user: User) -> dict:
        return user.to_public(self.roles.get_by_id(user.role_id))

    def many_to_public(self, users: list[User]) -> list[dict]:
        roles: dict[int, Role | None] = {}
        result = []
        for user in users:
            if user.role_id not in roles:
                roles[user.role_id] = self.roles.get_by_id(user.role_id)
            result.append(user.to_public(roles[user.role_id]))
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, fields: dict) -> User:
        """Administrative create. fields must include password and role_id."""
        email = fields["email"].strip().lower()
        if self.users.get_by_email(email) is not None:
            raise DuplicateEmail()
        self._require_role(fields["role_id"])
        user = User(
            first_name=fields["first_name"],
            last_name=fields["last_name"],
            email=email,
            role_id=fields["role_id"],
            hashed_password=hash_password(fields["password"], self.bcrypt_rounds),
            is_active=fields.get("is_active", True),
            avatar=fields.get("avatar"),
            gender=fields.get("gender"),
            phone=fields.get("phone"),
            date_of_birth=fields.get("date_of_birth"),
            address=fields.get("address"),
        )
        try:
            user_id = self.users.create_user(user)
        except IntegrityError:
            raise DuplicateEmail() from None
        logger.info("User created: id=%s", user_id)
        return self.get_user(user_id)

    def update_user(self, user_id: int, fields: dict) -> User:
        return self._apply(user_id, fields, ADMIN_USER_FIELDS)

    def update_profile(self, user_id: int, fields: dict) -> User:
        """Self-service update; email, role and active flag are not reachable here."""
        return self._apply(user_id, fields, PROFILE_FIELDS)

    def assign_role(self, user_id: int, role_id: int) -> User:
        user = self.get_user(user_id)
        self._require_role(role_id)
        self.users.update_user(user.id, role_id=role_id)
        logger.info("Role assigned: user id=%s role id=%s", user.id, role_id)
        return self.get_user(user.id)

    def delete_user(self, user_id: int, actor_id: int | None) -> User:
        """Hard-delete a user and return the record as it was."""
        if actor_id is not None and actor_id == user_id:
            raise SelfDeletionForbidden()
        user = self.get_user(user_id)
        self.users.delete_user(user.id)
        logger.info("User deleted: id=%s", user.id)
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_role(self, role_id: int) -> Role:
        role = self.roles.get_by_id(role_id)
        if role is None:
            raise InvalidInput("Invalid role ID.")
        return role

    def _apply(self, user_id: int, fields: dict, allowed: frozenset) -> User:
        user = self.get_user(user_id)
        updates = {k: v for k, v in fields.items() if k in allowed}
        if not updates:
            raise InvalidInput("No fields to update.")
        nulls = sorted(k for k, v in updates.items() if v is None and k in REQUIRED_USER_FIELDS)
        if nulls:
            raise InvalidInput(f"Fields cannot be null: {', '.join(nulls)}")

        if "email" in updates:
            updates["email"] = updates["email"].strip().lower()
            other = self.users.get_by_email(updates["email"])
            if other is not None and other.id != user.id:
                raise DuplicateEmail()
        if "role_id" in updates:
            self._require_role(updates["role_id"])
        if "password" in updates:
            updates["hashed_password"] = hash_password(updates.pop("password"), self.bcrypt_rounds)

        try:
            self.users.update_user(user.id, **updates)
        except IntegrityError:
            # Only the email column is UNIQUE among these fields.
            if "email" not in updates:
                raise
            raise DuplicateEmail() from None
        return self.get_user(user.id)
