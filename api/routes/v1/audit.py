"""
api/routes/v1/audit.py -- Read-only audit trail endpoints.

Routes:
  GET /api/v1/audit/logs                    -- filtered, paginated trail (audit:read)
  GET /api/v1/audit/logs/my                 -- caller's own trail (audit:read:self)
  GET /api/v1/audit/logs/{log_id}           -- one record (audit:read)
  GET /api/v1/audit/users/{user_id}/logs    -- one user's trail (audit:read, owner may use :self)
  GET /api/v1/audit/statistics              -- aggregate counts (audit:read)
  GET /api/v1/audit/actions                 -- action vocabulary (audit:read)
  GET /api/v1/audit/resources               -- resource vocabulary (audit:read)

Nothing here writes. Records are returned newest first with a short actor
summary embedded when the actor still exists.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import Envelope, Pagination, ok
from audit.models import AuditAction, AuditFilter, AuditRecord, AuditResource
from auth.dependencies import require_ownership, require_permission
from auth.models import Principal
from core.errors import InvalidInput, NotFound

router = APIRouter()


def _filter(
    user_id: Optional[int],
    action: Optional[AuditAction],
    resource: Optional[AuditResource],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
) -> AuditFilter:
    if start_date and end_date and end_date <= start_date:
        raise InvalidInput("End date must be after start date.")
    return AuditFilter(user_id=user_id, action=action, resource=resource, start=start_date, end=end_date)


def _with_actors(request: Request, records: list[AuditRecord]) -> list[dict]:
    user_store = request.app.state.user_store
    actors: dict[int, Optional[dict]] = {}
    result = []
    for record in records:
        entry = record.to_dict()
        if record.user_id is not None:
            if record.user_id not in actors:
                user = user_store.get_by_id(record.user_id)
                actors[record.user_id] = (
                    {"id": user.id, "first_name": user.first_name, "last_name": user.last_name, "email": user.email}
                    if user is not None
                    else None
                )
            entry["user"] = actors[record.user_id]
        result.append(entry)
    return result


def _page(request: Request, filters: AuditFilter, page: int, limit: int) -> dict:
    records, total = request.app.state.audit_store.query(filters, page=page, limit=limit)
    return {
        "logs": _with_actors(request, records),
        "pagination": Pagination.build(page, limit, total).model_dump(),
    }


@router.get("/audit/logs", response_model=Envelope)
def list_logs(
    request: Request,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    user_id: Annotated[Optional[int], Query(ge=1)] = None,
    action: Optional[AuditAction] = None,
    resource: Optional[AuditResource] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    principal: Principal = Depends(require_permission("audit:read")),
) -> Envelope:
    filters = _filter(user_id, action, resource, start_date, end_date)
    return ok("Audit logs retrieved successfully.", _page(request, filters, page, limit))


@router.get("/audit/logs/my", response_model=Envelope)
def my_logs(
    request: Request,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    action: Optional[AuditAction] = None,
    resource: Optional[AuditResource] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    principal: Principal = Depends(require_permission("audit:read:self")),
) -> Envelope:
    filters = _filter(principal.id, action, resource, start_date, end_date)
    return ok("Your audit logs retrieved successfully.", _page(request, filters, page, limit))


@router.get("/audit/logs/{log_id}", response_model=Envelope)
def get_log(
    request: Request,
    log_id: int,
    principal: Principal = Depends(require_permission("audit:read")),
) -> Envelope:
    record = request.app.state.audit_store.get(log_id)
    if record is None:
        raise NotFound("Audit log not found.")
    return ok("Audit log retrieved successfully.", _with_actors(request, [record])[0])


@router.get("/audit/users/{user_id}/logs", response_model=Envelope)
def user_logs(
    request: Request,
    user_id: int,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    action: Optional[AuditAction] = None,
    resource: Optional[AuditResource] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    principal: Principal = Depends(require_ownership("audit:read", "user_id")),
) -> Envelope:
    filters = _filter(user_id, action, resource, start_date, end_date)
    return ok("User audit logs retrieved successfully.", _page(request, filters, page, limit))


@router.get("/audit/statistics", response_model=Envelope)
def statistics(
    request: Request,
    user_id: Annotated[Optional[int], Query(ge=1)] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    principal: Principal = Depends(require_permission("audit:read")),
) -> Envelope:
    filters = _filter(user_id, None, None, start_date, end_date)
    return ok("Audit statistics retrieved successfully.", request.app.state.audit_store.statistics(filters))


@router.get("/audit/actions", response_model=Envelope)
async def list_actions(principal: Principal = Depends(require_permission("audit:read"))) -> Envelope:
    return ok("Audit actions retrieved successfully.", [a.value for a in AuditAction])


@router.get("/audit/resources", response_model=Envelope)
async def list_resources(principal: Principal = Depends(require_permission("audit:read"))) -> Envelope:
    return ok("Audit resources retrieved successfully.", [r.value for r in AuditResource])
