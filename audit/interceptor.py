"""
audit/interceptor.py -- Success-gated audit recording for mutating endpoints.

Two ways in:

  audited(...)     decorator for FastAPI endpoints. The endpoint runs
                   untouched; afterwards, only on a 2xx outcome, one record
                   is built from the request and the structured result.
  AuditLogger      explicit log_auth_event() / log_action() calls, used by
                   SessionManager for events that are not a plain
                   request -> result mapping (LOGIN, FAILED_LOGIN, ...).

Failure isolation: AuditLogger.log() never raises. A store failure is logged
with a traceback and the operation that triggered it still succeeds. The
audit write is not in the same transaction as the mutation, so a crash
between the two can leave an un-audited change.

Every snapshot passes through scrub_secrets() before it is stored.

Usage:
    @router.put("/roles/{role_id}")
    @audited(AuditAction.UPDATE_ROLE, AuditResource.ROLES,
             capture_before=True, capture_after=True, load_before=_load_role)
    async def update_role(request: Request, role_id: int, body: RoleUpdate, ...): ...

Layer rule: no imports from auth/ or api/. The principal on request.state is
read by attribute (id) only.
"""

from __future__ import annotations

import functools
import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import Response

from audit.models import AuditAction, AuditRecord, AuditResource
from audit.store import AuditStore

logger = logging.getLogger("accessgate.audit")

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "hashed_password",
        "token",
        "secret",
        "access_token",
        "refresh_token",
        "reset_password_token",
        "reset_password_expires",
        "current_password",
        "new_password",
        "reset_token",
    }
)

# ---------------------------------------------------------------------------
# Scrubbing
# ---------------------------------------------------------------------------


def scrub_secrets(value: Any) -> Any:
    """Return a copy of value with every SENSITIVE_KEYS entry removed, at any depth.

    Pydantic models are dumped first. Non-container values pass through.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    if isinstance(value, dict):
        return {k: scrub_secrets(v) for k, v in value.items() if k not in SENSITIVE_KEYS}
    if isinstance(value, (list, tuple)):
        return [scrub_secrets(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditContext:
    """Who did it and from where, captured from the HTTP request."""

    actor_id: int | None = None
    resource_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> AuditContext:
        principal = getattr(request.state, "principal", None)
        path_params = request.path_params or {}
        first_param = next(iter(path_params.values()), None)
        return cls(
            actor_id=getattr(principal, "id", None),
            resource_id=str(first_param) if first_param is not None else None,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )

    def with_actor(self, actor_id: int | None) -> AuditContext:
        return AuditContext(
            actor_id=actor_id,
            resource_id=self.resource_id,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )


# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------


class AuditLogger:
    """Builds scrubbed AuditRecords and appends them to an AuditStore."""

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def log(
        self,
        action: AuditAction,
        resource: AuditResource,
        context: AuditContext | None = None,
        *,
        actor_id: int | None = None,
        resource_id: Any = None,
        before: Any = None,
        after: Any = None,
    ) -> AuditRecord | None:
        """Append one record. Returns it, or None when the write failed.

        actor_id overrides context.actor_id when given.
        """
        context = context or AuditContext()
        actor = actor_id if actor_id is not None else context.actor_id
        try:
            record = AuditRecord(
                action=AuditAction(action),
                resource=AuditResource(resource),
                user_id=actor,
                resource_id=str(resource_id) if resource_id is not None else None,
                before=scrub_secrets(before),
                after=scrub_secrets(after),
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
            return self.store.append(record)
        except Exception:
            logger.exception("Audit write failed (action=%s resource=%s)", action, resource)
            return None

    def log_auth_event(
        self,
        action: AuditAction,
        context: AuditContext | None = None,
        *,
        user_id: int | None = None,
        details: dict | None = None,
    ) -> AuditRecord | None:
        """Record an authentication event against the "auth" resource.

        resource_id and actor are both the user the event concerns; for a
        FAILED_LOGIN on an unknown account both stay None.
        """
        return self.log(
            action,
            AuditResource.AUTH,
            context,
            actor_id=user_id,
            resource_id=user_id,
            after=details,
        )

    def log_action(
        self,
        action: AuditAction,
        resource: AuditResource,
        context: AuditContext | None = None,
        *,
        resource_id: Any = None,
        before: Any = None,
        after: Any = None,
    ) -> AuditRecord | None:
        return self.log(action, resource, context, resource_id=resource_id, before=before, after=after)


# ---------------------------------------------------------------------------
# Decorator
# ---------------------------------------------------------------------------

ResourceIdExtractor = Callable[[Request, Any], Any]
BeforeLoader = Callable[[Request, Any], Any]


def audited(
    action: AuditAction,
    resource: AuditResource,
    *,
    capture_before: bool = False,
    capture_after: bool = False,
    resource_id: ResourceIdExtractor | None = None,
    load_before: BeforeLoader | None = None,
):
    """Record one audit entry after a successful endpoint call.

    Apply *below* @router.<method>(...) so FastAPI registers the wrapper.

    resource_id   (request, result_data) -> id. Defaults to the first path
                  parameter.
    load_before   (request, resource_id) -> snapshot, evaluated before the
                  endpoint runs. Without it, capture_before snapshots the
                  validated request body.

    Actor: request.state.principal.id, else result data "id" or
    data["user"]["id"] (self-registration), else None.
    """

    def decorator(func):
        signature = inspect.signature(func, eval_str=True)
        request_param = _find_request_param(signature)
        if request_param is None:
            raise TypeError(f"@audited endpoint {func.__name__!r} must accept a Request parameter")
        is_async = inspect.iscoroutinefunction(func)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            request: Request = kwargs[request_param]
            context = AuditContext.from_request(request)

            before = None
            if capture_before:
                if load_before is not None:
                    before = await run_in_threadpool(load_before, request, context.resource_id)
                else:
                    before = _body_snapshot(kwargs)

            if is_async:
                result = await func(*args, **kwargs)
            else:
                result = await run_in_threadpool(func, *args, **kwargs)

            status_code, data = _outcome(result)
            if not 200 <= status_code < 300:
                return result

            audit_logger: AuditLogger | None = getattr(request.app.state, "audit", None)
            if audit_logger is None:
                logger.error("No audit logger on app.state; %s not recorded", action)
                return result

            actor = context.actor_id if context.actor_id is not None else _actor_from_result(data)
            if resource_id is not None:
                target = _safe_extract(resource_id, request, data)
            else:
                target = context.resource_id
            audit_logger.log(
                action,
                resource,
                context,
                actor_id=actor,
                resource_id=target,
                before=before,
                after=data if capture_after else None,
            )
            return result

        # Resolved annotations, so FastAPI never has to evaluate string
        # annotations against this module's globals.
        wrapper.__signature__ = signature
        return wrapper

    return decorator


def _find_request_param(signature: inspect.Signature) -> str | None:
    for name, param in signature.parameters.items():
        annotation = param.annotation
        if inspect.isclass(annotation) and issubclass(annotation, Request):
            return name
    return "request" if "request" in signature.parameters else None


def _body_snapshot(kwargs: dict) -> Any:
    for value in kwargs.values():
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json", exclude_unset=True)
    return None


def _outcome(result: Any) -> tuple[int, Any]:
    """(status code, envelope data) for whatever the endpoint returned."""
    if isinstance(result, Response):
        data = None
        body = getattr(result, "body", None)
        if body:
            try:
                payload = json.loads(body)
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                data = payload.get("data")
        return result.status_code, data
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json")
    if isinstance(result, dict):
        return 200, result.get("data")
    return 200, None


def _actor_from_result(data: Any) -> int | None:
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("id"), int):
        return data["id"]
    user = data.get("user")
    if isinstance(user, dict) and isinstance(user.get("id"), int):
        return user["id"]
    return None


def _safe_extract(extractor: ResourceIdExtractor, request: Request, data: Any) -> Any:
    try:
        return extractor(request, data)
    except (KeyError, TypeError, AttributeError):
        logger.warning("Audit resource id extractor failed on %s", request.url.path)
        return None
