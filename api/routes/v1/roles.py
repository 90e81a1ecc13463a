"""
api/routes/v1/roles.py -- Role management REST endpoints.

Routes:
  GET    /api/v1/roles                   -- list roles (role:read)
  GET    /api/v1/roles/permissions       -- permission catalogue (role:read)
  GET    /api/v1/roles/{role_id}         -- one role (role:read)
  GET    /api/v1/roles/{role_id}/users   -- users holding the role (role:read)
  POST   /api/v1/roles                   -- create role (role:create)
  PUT    /api/v1/roles/{role_id}         -- update role (role:update)
  DELETE /api/v1/roles/{role_id}         -- delete role (role:delete)

Protected-role and role-in-use rules live in RoleService; these handlers
only translate HTTP to service calls.
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import Envelope, Pagination, RoleCreate, RoleUpdate, SortEnum, ok
from audit.interceptor import audited
from audit.models import AuditAction, AuditResource
from auth.dependencies import require_permission
from auth.directory import RoleService
from auth.models import Principal, Role

router = APIRouter()


def _roles(request: Request) -> RoleService:
    return request.app.state.roles


def _role_dict(role: Role, user_count: Optional[int] = None) -> dict:
    data = {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "permissions": list(role.permissions),
        "created_at": role.created_at,
        "updated_at": role.updated_at,
    }
    if user_count is not None:
        data["user_count"] = user_count
    return data


def _load_role(request: Request, resource_id) -> dict:
    return _role_dict(_roles(request).get_role(int(resource_id)))


def _created_id(request: Request, data: dict) -> int:
    return data["id"]


@router.get("/roles", response_model=Envelope)
def list_roles(
    request: Request,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    search: Annotated[Optional[str], Query(min_length=1, max_length=100)] = None,
    sort_by: Annotated[str, Query(max_length=32)] = "created_at",
    sort: SortEnum = SortEnum.desc,
    principal: Principal = Depends(require_permission("role:read")),
) -> Envelope:
    service = _roles(request)
    roles, total = service.list_roles(search=search, page=page, limit=limit, sort_by=sort_by, sort=sort.value)
    return ok(
        "Roles retrieved successfully.",
        {
            "roles": [_role_dict(r, service.users.count_by_role(r.id)) for r in roles],
            "pagination": Pagination.build(page, limit, total).model_dump(),
        },
    )


@router.get("/roles/permissions", response_model=Envelope)
async def list_permissions(
    request: Request,
    principal: Principal = Depends(require_permission("role:read")),
) -> Envelope:
    return ok("Permissions retrieved successfully.", _roles(request).permission_catalogue())


@router.get("/roles/{role_id}", response_model=Envelope)
def get_role(
    request: Request,
    role_id: int,
    principal: Principal = Depends(require_permission("role:read")),
) -> Envelope:
    service = _roles(request)
    role = service.get_role(role_id)
    return ok("Role retrieved successfully.", _role_dict(role, service.users.count_by_role(role.id)))


@router.get("/roles/{role_id}/users", response_model=Envelope)
def role_users(
    request: Request,
    role_id: int,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    principal: Principal = Depends(require_permission("role:read")),
) -> Envelope:
    role, users, total = _roles(request).users_in_role(role_id, page=page, limit=limit)
    return ok(
        "Role users retrieved successfully.",
        {
            "role": _role_dict(role),
            "users": [u.to_public() for u in users],
            "pagination": Pagination.build(page, limit, total).model_dump(),
        },
    )


@router.post("/roles", response_model=Envelope, status_code=201)
@audited(
    AuditAction.CREATE_ROLE,
    AuditResource.ROLES,
    capture_before=True,
    capture_after=True,
    resource_id=_created_id,
)
def create_role(
    request: Request,
    body: RoleCreate,
    principal: Principal = Depends(require_permission("role:create")),
) -> Envelope:
    role = _roles(request).create_role(body.name, body.permissions, body.description)
    return ok("Role created successfully.", _role_dict(role))


@router.put("/roles/{role_id}", response_model=Envelope)
@audited(
    AuditAction.UPDATE_ROLE,
    AuditResource.ROLES,
    capture_before=True,
    capture_after=True,
    load_before=_load_role,
)
def update_role(
    request: Request,
    role_id: int,
    body: RoleUpdate,
    principal: Principal = Depends(require_permission("role:update")),
) -> Envelope:
    role = _roles(request).update_role(
        role_id,
        name=body.name,
        description=body.description,
        permissions=body.permissions,
    )
    return ok("Role updated successfully.", _role_dict(role))


@router.delete("/roles/{role_id}", response_model=Envelope)
@audited(AuditAction.DELETE_ROLE, AuditResource.ROLES, capture_before=True, load_before=_load_role)
def delete_role(
    request: Request,
    role_id: int,
    principal: Principal = Depends(require_permission("role:delete")),
) -> Envelope:
    _roles(request).delete_role(role_id)
    return ok("Role deleted successfully.")
