"""
API request and response models for AccessGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Every response, success or failure, uses the same Envelope:
    {"success": bool, "message": str, "data": ..., "errors": [{"field", "message"}]}

Separation of concerns: auth/ + audit/ models = domain truth; api/ models =
API contract.
"""

import math
import re
from datetime import date
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.permissions import KNOWN_PERMISSIONS

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^[+]?[\d\s\-()]+$"
ROLE_NAME_PATTERN = r"^[a-zA-Z0-9_-]+$"

_Name = Annotated[str, Field(min_length=2, max_length=50)]
_Email = Annotated[str, Field(pattern=EMAIL_PATTERN, max_length=255)]
_Password = Annotated[str, Field(min_length=6, max_length=128)]

_PASSWORD_CLASSES = (re.compile(r"[a-z]"), re.compile(r"[A-Z]"), re.compile(r"\d"))


def _strong_password(value: str) -> str:
    if not all(p.search(value) for p in _PASSWORD_CLASSES):
        raise ValueError("Password must contain at least one lowercase letter, one uppercase letter, and one number")
    return value


def _not_null(value: Any) -> Any:
    # Omitting a field leaves it unchanged; an explicit null would clear a NOT NULL column.
    if value is None:
        raise ValueError("Field cannot be null")
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class GenderEnum(str, Enum):
    male = "male"
    female = "female"
    other = "other"


class SortEnum(str, Enum):
    asc = "asc"
    desc = "desc"


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class FieldError(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    message: str


class Envelope(BaseModel):
    """Uniform response body for every endpoint."""

    success: bool = True
    message: str
    data: Any = None
    errors: Optional[list[FieldError]] = None


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0)


def ok(message: str, data: Any = None) -> Envelope:
    return Envelope(success=True, message=message, data=data)


def failure(message: str, errors: Optional[list[FieldError]] = None, code: Optional[str] = None) -> dict:
    """Error body. Carries the machine-readable code next to the envelope fields."""
    body: dict = {"success": False, "message": message}
    if code:
        body["code"] = code
    if errors:
        body["errors"] = [e.model_dump() for e in errors]
    return body


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = {}


# ---------------------------------------------------------------------------
# Auth requests
# ---------------------------------------------------------------------------


class ProfileFields(BaseModel):
    """Optional profile attributes shared by several request bodies."""

    model_config = ConfigDict(str_strip_whitespace=True)

    avatar: Optional[str] = Field(default=None, max_length=500)
    gender: Optional[GenderEnum] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN, max_length=30)
    date_of_birth: Optional[date] = None
    address: Optional[str] = Field(default=None, max_length=500)

    @field_validator("date_of_birth")
    @classmethod
    def not_in_future(cls, value: Optional[date]) -> Optional[date]:
        if value is not None and value > date.today():
            raise ValueError("Date of birth cannot be in the future")
        return value


class RegisterRequest(ProfileFields):
    """Request body for POST /api/v1/auth/register."""

    first_name: _Name
    last_name: _Name
    email: _Email
    password: _Password
    role_id: Optional[int] = Field(default=None, ge=1)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return _strong_password(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    new_password: _Password

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return _strong_password(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: _Password

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return _strong_password(value)


# ---------------------------------------------------------------------------
# User management requests
# ---------------------------------------------------------------------------


class UserCreate(RegisterRequest):
    """Request body for POST /api/v1/users. Admin-supplied role is mandatory."""

    role_id: int = Field(ge=1)
    is_active: bool = True


class UserUpdate(ProfileFields):
    """Request body for PUT /api/v1/users/{user_id}. All fields optional."""

    first_name: Optional[_Name] = None
    last_name: Optional[_Name] = None
    email: Optional[_Email] = None
    role_id: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None
    password: Optional[_Password] = None

    @field_validator("first_name", "last_name", "email", "role_id", "is_active", "password", mode="before")
    @classmethod
    def reject_null(cls, value: Any) -> Any:
        return _not_null(value)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return _strong_password(value)


class ProfileUpdate(ProfileFields):
    """Request body for PUT /api/v1/users/profile."""

    first_name: Optional[_Name] = None
    last_name: Optional[_Name] = None

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def reject_null(cls, value: Any) -> Any:
        return _not_null(value)


class RoleAssignment(BaseModel):
    role_id: int = Field(ge=1)


# ---------------------------------------------------------------------------
# Role management requests
# ---------------------------------------------------------------------------


def _known_permissions(values: Optional[list[str]]) -> Optional[list[str]]:
    if values is None:
        return values
    for permission in values:
        if permission not in KNOWN_PERMISSIONS:
            raise ValueError(f"Invalid permission: {permission}")
    # Set semantics; keep first-seen order.
    return list(dict.fromkeys(values))


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/roles."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN)
    description: str = Field(default="", max_length=200)
    permissions: list[str] = Field(min_length=1)

    @field_validator("permissions")
    @classmethod
    def known_permissions(cls, values: list[str]) -> list[str]:
        return _known_permissions(values)


class RoleUpdate(BaseModel):
    """Request body for PUT /api/v1/roles/{role_id}. All fields optional."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN)
    description: Optional[str] = Field(default=None, max_length=200)
    permissions: Optional[list[str]] = Field(default=None, min_length=1)

    @field_validator("permissions")
    @classmethod
    def known_permissions(cls, values: Optional[list[str]]) -> Optional[list[str]]:
        return _known_permissions(values)
