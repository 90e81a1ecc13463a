"""
auth/models.py -- Domain dataclasses for identity and access entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these dataclasses own the domain shape.

Role <-> User: a User holds only role_id. A Role never holds a list of its
users -- "who has this role" is answered by an indexed query in the store
(UserStore.count_by_role), so there is no in-memory back-pointer to keep in
sync.

Layer rule: no imports from api/, audit/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Role:
    """A named set of permission strings shared by many users.

    permissions has set semantics (order is irrelevant) but is kept as a list
    so it serializes to JSON unchanged.
    """

    name: str
    permissions: list[str] = field(default_factory=list)
    description: str = ""
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class User:
    """An authenticated identity (principal).

    email is stored lower-cased and is unique. hashed_password is a bcrypt
    hash and must never leave the service layer -- see to_public().

    reset_password_token / reset_password_expires hold the one outstanding
    password-reset token. Clearing them after use is what makes a reset token
    single-use.
    """

    first_name: str
    last_name: str
    email: str
    role_id: int
    hashed_password: str | None = None
    id: int | None = None
    is_active: bool = True
    last_login: str | None = None
    reset_password_token: str | None = None
    reset_password_expires: str | None = None
    avatar: str | None = None
    gender: str | None = None  # "male", "female", "other"
    phone: str | None = None
    date_of_birth: str | None = None  # YYYY-MM-DD
    address: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_public(self, role: Role | None = None) -> dict:
        """Serialize without secrets. Embeds the role when one is given."""
        data = {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "role_id": self.role_id,
            "is_active": self.is_active,
            "last_login": self.last_login,
            "avatar": self.avatar,
            "gender": self.gender,
            "phone": self.phone,
            "date_of_birth": self.date_of_birth,
            "address": self.address,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if role is not None:
            data["role"] = {
                "id": role.id,
                "name": role.name,
                "description": role.description,
                "permissions": list(role.permissions),
            }
        return data


@dataclass
class Principal:
    """The caller of a request after the Authorization Gate resolved it.

    Pairs the user with the role as it is *now* in the store, so permission
    changes to a role apply to already-issued access tokens.
    """

    user: User
    role: Role

    @property
    def id(self) -> int | None:
        return self.user.id

    @property
    def permissions(self) -> list[str]:
        return self.role.permissions
