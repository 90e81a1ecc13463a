"""
auth/permissions.py -- Permission strings and the permission evaluator.

Permission format: "resource:action" or "resource:action:self". Either
segment may be the literal wildcard "*". Two combinators:

  resource:*   grants every action on that resource.
  ...:self     narrows an action to "only when the caller owns the resource".

A self-scoped permission is a restriction the caller applies, not a separate
grant: holding "user:update" implies "user:update:self", never the reverse.

Evaluation order (first match wins):
  1. "*:*" in the granted set
  2. exact match
  3. "<resource>:*" in the granted set
  4. required is self-scoped -> evaluate the unscoped base permission
  5. deny

PermissionEvaluator has no state. One instance is created at startup and
passed to whoever needs it (see api/main.py); nothing here is a module-level
singleton.

Layer rule: no imports from api/, audit/, or core/.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

WILDCARD = "*"
UNIVERSAL = "*:*"
SELF_SUFFIX = "self"

_PERMISSION_RE = re.compile(r"^([a-zA-Z0-9*]+):([a-zA-Z0-9*]+)(?::(self))?$")


@dataclass(frozen=True)
class Permission:
    """Parsed, validated permission string."""

    resource: str
    action: str
    self_scoped: bool = False

    @classmethod
    def parse(cls, text: str) -> Permission:
        """Parse "resource:action[:self]". Raises ValueError on malformed input."""
        if not isinstance(text, str):
            raise ValueError(f"Permission must be a string, got {type(text).__name__}")
        match = _PERMISSION_RE.match(text)
        if match is None:
            raise ValueError(
                f"Invalid permission format: {text!r}. Expected resource:action or resource:action:self"
            )
        resource, action, self_flag = match.groups()
        return cls(resource=resource, action=action, self_scoped=self_flag is not None)

    @property
    def base(self) -> Permission:
        """The same permission without the self scope."""
        return Permission(self.resource, self.action)

    def scoped_to_self(self) -> Permission:
        return Permission(self.resource, self.action, self_scoped=True)

    @property
    def resource_wildcard(self) -> str:
        return f"{self.resource}:{WILDCARD}"

    def __str__(self) -> str:
        text = f"{self.resource}:{self.action}"
        return f"{text}:{SELF_SUFFIX}" if self.self_scoped else text


def is_valid_permission(text: str) -> bool:
    try:
        Permission.parse(text)
    except ValueError:
        return False
    return True


class HasPermissions(Protocol):
    """Anything with an owner id and a granted permission list (e.g. Principal)."""

    @property
    def id(self) -> int | str | None: ...

    @property
    def permissions(self) -> list[str]: ...


class PermissionEvaluator:
    """Pure permission checks over a granted permission set.

    Never raises: malformed or missing input evaluates to False.
    """

    def has_permission(self, granted: Iterable[str] | None, required: str | Permission) -> bool:
        if not granted:
            return False
        try:
            wanted = required if isinstance(required, Permission) else Permission.parse(required)
        except ValueError:
            return False
        return self._evaluate(_normalize(granted), wanted)

    def _evaluate(self, granted: frozenset[str], wanted: Permission) -> bool:
        if UNIVERSAL in granted:
            return True
        if str(wanted) in granted:
            return True
        if wanted.resource_wildcard in granted:
            return True
        if wanted.self_scoped:
            return self._evaluate(granted, wanted.base)
        return False

    def can_access_resource(
        self,
        principal: HasPermissions | None,
        owner_id: int | str | None,
        required: str | Permission,
    ) -> bool:
        """Ownership-aware check.

        Owner (exact id equality): needs the self-scoped permission, which the
        unscoped one also satisfies. Anyone else: needs the unscoped permission;
        a ":self" grant never helps a non-owner.
        """
        if principal is None or principal.id is None:
            return False
        try:
            wanted = required if isinstance(required, Permission) else Permission.parse(required)
        except ValueError:
            return False
        wanted = wanted.base
        if owner_id is not None and str(principal.id) == str(owner_id):
            return self.has_permission(principal.permissions, wanted.scoped_to_self())
        return self.has_permission(principal.permissions, wanted)

    def has_any_permission(self, granted: Iterable[str] | None, required: Iterable[str]) -> bool:
        wanted = list(required or [])
        if not wanted:
            return False
        return any(self.has_permission(granted, p) for p in wanted)

    def has_all_permissions(self, granted: Iterable[str] | None, required: Iterable[str]) -> bool:
        wanted = list(required or [])
        if not wanted:
            return False
        return all(self.has_permission(granted, p) for p in wanted)


def _normalize(granted: Iterable[str]) -> frozenset[str]:
    """Canonical string forms of every well-formed granted permission."""
    result = set()
    for entry in granted:
        try:
            result.add(str(Permission.parse(entry)))
        except ValueError:
            continue
    return frozenset(result)


# ---------------------------------------------------------------------------
# Catalogue
#
# The closed vocabulary role payloads are validated against. Served as-is by
# GET /api/v1/roles/permissions so the admin UI can render checkboxes.
# ---------------------------------------------------------------------------

PERMISSION_CATALOGUE: list[dict] = [
    {
        "category": "User Management",
        "permissions": [
            {"name": "user:create", "description": "Create new users"},
            {"name": "user:read", "description": "View all users"},
            {"name": "user:update", "description": "Update any user"},
            {"name": "user:delete", "description": "Delete users"},
            {"name": "user:read:self", "description": "View own profile"},
            {"name": "user:update:self", "description": "Update own profile"},
        ],
    },
    {
        "category": "Role Management",
        "permissions": [
            {"name": "role:create", "description": "Create new roles"},
            {"name": "role:read", "description": "View all roles"},
            {"name": "role:update", "description": "Update roles"},
            {"name": "role:delete", "description": "Delete roles"},
        ],
    },
    {
        "category": "Audit Logs",
        "permissions": [
            {"name": "audit:read", "description": "View all audit logs"},
            {"name": "audit:read:self", "description": "View own audit logs"},
        ],
    },
    {
        "category": "System Administration",
        "permissions": [
            {"name": UNIVERSAL, "description": "Full system access (Super Admin)"},
        ],
    },
]

KNOWN_PERMISSIONS: frozenset[str] = frozenset(
    p["name"] for group in PERMISSION_CATALOGUE for p in group["permissions"]
) | frozenset({"user:*", "role:*", "audit:*"})
