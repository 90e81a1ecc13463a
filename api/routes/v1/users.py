"""
api/routes/v1/users.py -- User management REST endpoints.

Routes:
  GET    /api/v1/users                      -- list users (user:read)
  PUT    /api/v1/users/profile              -- update own profile (user:update, self)
  GET    /api/v1/users/{user_id}            -- one user (user:read, owner may use :self)
  POST   /api/v1/users                      -- create user (user:create)
  PUT    /api/v1/users/{user_id}            -- update user (user:update)
  PUT    /api/v1/users/{user_id}/role       -- assign role (user:update)
  DELETE /api/v1/users/{user_id}            -- delete user (user:delete)
  GET    /api/v1/users/{user_id}/audit-logs -- the user's audit trail (audit:read)

/users/profile is declared before /users/{user_id} so the literal path wins.

Every mutating route carries @audited; before-snapshots are loaded from the
store ahead of the change.
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    Envelope,
    Pagination,
    ProfileUpdate,
    RoleAssignment,
    SortEnum,
    UserCreate,
    UserUpdate,
    ok,
)
from audit.interceptor import audited
from audit.models import AuditAction, AuditFilter, AuditResource
from auth.dependencies import require_ownership, require_permission, require_self
from auth.directory import UserService
from auth.models import Principal

router = APIRouter()


def _users(request: Request) -> UserService:
    return request.app.state.users


def _load_user(request: Request, resource_id) -> dict:
    service = _users(request)
    return service.to_public(service.get_user(int(resource_id)))


def _load_own_profile(request: Request, resource_id) -> dict:
    return _load_user(request, request.state.principal.id)


def _own_id(request: Request, data) -> int:
    return request.state.principal.id


def _created_id(request: Request, data: dict) -> int:
    return data["id"]


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


@router.get("/users", response_model=Envelope)
def list_users(
    request: Request,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    search: Annotated[Optional[str], Query(max_length=100)] = None,
    role: Annotated[Optional[str], Query(max_length=50)] = None,
    is_active: Optional[bool] = None,
    sort_by: Annotated[str, Query(max_length=32)] = "created_at",
    sort: SortEnum = SortEnum.desc,
    principal: Principal = Depends(require_permission("user:read")),
) -> Envelope:
    service = _users(request)
    users, total = service.list_users(
        search=search,
        role=role,
        is_active=is_active,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort=sort.value,
    )
    return ok(
        "Users retrieved successfully.",
        {
            "users": service.many_to_public(users),
            "pagination": Pagination.build(page, limit, total).model_dump(),
        },
    )


@router.post("/users", response_model=Envelope, status_code=201)
@audited(AuditAction.CREATE_USER, AuditResource.USERS, capture_after=True, resource_id=_created_id)
def create_user(
    request: Request,
    body: UserCreate,
    principal: Principal = Depends(require_permission("user:create")),
) -> Envelope:
    service = _users(request)
    user = service.create_user(body.model_dump(mode="json"))
    return ok("User created successfully.", service.to_public(user))


# ---------------------------------------------------------------------------
# Own profile
# ---------------------------------------------------------------------------


@router.put("/users/profile", response_model=Envelope)
@audited(
    AuditAction.UPDATE_USER,
    AuditResource.USERS,
    capture_before=True,
    capture_after=True,
    resource_id=_own_id,
    load_before=_load_own_profile,
)
def update_profile(
    request: Request,
    body: ProfileUpdate,
    principal: Principal = Depends(require_self("user:update")),
) -> Envelope:
    service = _users(request)
    user = service.update_profile(principal.id, body.model_dump(mode="json", exclude_unset=True))
    return ok("Profile updated successfully.", service.to_public(user))


# ---------------------------------------------------------------------------
# Single user
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}", response_model=Envelope)
def get_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_ownership("user:read", "user_id")),
) -> Envelope:
    service = _users(request)
    return ok("User retrieved successfully.", service.to_public(service.get_user(user_id)))


@router.put("/users/{user_id}", response_model=Envelope)
@audited(
    AuditAction.UPDATE_USER,
    AuditResource.USERS,
    capture_before=True,
    capture_after=True,
    load_before=_load_user,
)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    principal: Principal = Depends(require_permission("user:update")),
) -> Envelope:
    service = _users(request)
    user = service.update_user(user_id, body.model_dump(mode="json", exclude_unset=True))
    return ok("User updated successfully.", service.to_public(user))


@router.put("/users/{user_id}/role", response_model=Envelope)
@audited(
    AuditAction.ASSIGN_ROLE,
    AuditResource.USERS,
    capture_before=True,
    capture_after=True,
    load_before=_load_user,
)
def assign_role(
    request: Request,
    user_id: int,
    body: RoleAssignment,
    principal: Principal = Depends(require_permission("user:update")),
) -> Envelope:
    service = _users(request)
    user = service.assign_role(user_id, body.role_id)
    return ok("Role assigned successfully.", service.to_public(user))


@router.delete("/users/{user_id}", response_model=Envelope)
@audited(AuditAction.DELETE_USER, AuditResource.USERS, capture_before=True, load_before=_load_user)
def delete_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_permission("user:delete")),
) -> Envelope:
    _users(request).delete_user(user_id, principal.id)
    return ok("User deleted successfully.")


@router.get("/users/{user_id}/audit-logs", response_model=Envelope)
def user_audit_logs(
    request: Request,
    user_id: int,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    principal: Principal = Depends(require_permission("audit:read")),
) -> Envelope:
    _users(request).get_user(user_id)
    records, total = request.app.state.audit_store.query(AuditFilter(user_id=user_id), page=page, limit=limit)
    return ok(
        "User audit logs retrieved successfully.",
        {
            "logs": [r.to_dict() for r in records],
            "pagination": Pagination.build(page, limit, total).model_dump(),
        },
    )
