"""
auth/dependencies.py -- FastAPI Depends() helpers: the Authorization Gate.

get_current_principal() resolves "Authorization: Bearer <access token>" to a
Principal (user + the user's role as it is now in the store) and leaves it on
request.state.principal, where the audit interceptor picks up the actor.

The permission gates are factories returning dependencies:

  require_permission(p)            caller holds p
  require_ownership(p, "user_id")  owner of the path resource holds p (or
                                   p:self); anyone else holds p
  require_self(p)                  the resource is the caller's own record

Gates run before the endpoint body. A denial raises InsufficientPermission
naming the permission that was missing and is logged at WARNING. The
evaluator is read from app.state; nothing here is a module-level singleton.

Layer rule: no imports from api/. This module may import from fastapi
(Depends/Request) because it is part of the dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Request

from auth.models import Principal
from auth.permissions import Permission, PermissionEvaluator
from auth.tokens import extract_bearer_token
from core.errors import AccountInactive, AuthenticationRequired, InsufficientPermission, InvalidToken

logger = logging.getLogger("accessgate.auth")


def get_current_principal(request: Request) -> Principal:
    """Require a valid access token. Raises 401/403 ServiceErrors otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        raise AuthenticationRequired()

    claims = request.app.state.issuer.verify_access(token)
    user = request.app.state.user_store.get_by_id(claims["user_id"])
    if user is None:
        raise InvalidToken()
    if not user.is_active:
        raise AccountInactive()

    role = request.app.state.role_store.get_by_id(user.role_id)
    if role is None:
        logger.error("User id=%s references missing role id=%s", user.id, user.role_id)
        raise InvalidToken()

    principal = Principal(user=user, role=role)
    request.state.principal = principal
    return principal


def _deny(principal: Principal, required: Permission | str, request: Request) -> InsufficientPermission:
    logger.warning(
        "Permission denied: user id=%s lacks %s on %s %s",
        principal.id,
        required,
        request.method,
        request.url.path,
    )
    return InsufficientPermission(str(required))


def require_permission(permission: str):
    """Dependency factory: caller must hold permission (wildcards apply)."""
    required = Permission.parse(permission)

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        evaluator: PermissionEvaluator = request.app.state.evaluator
        if not evaluator.has_permission(principal.permissions, required):
            raise _deny(principal, required, request)
        return principal

    return dependency


def require_ownership(permission: str, param: str = "user_id"):
    """Dependency factory for routes whose path parameter names the owner.

    The owner passes with permission or permission:self; anyone else needs
    the unscoped permission.
    """
    required = Permission.parse(permission).base

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        evaluator: PermissionEvaluator = request.app.state.evaluator
        owner_id = request.path_params.get(param)
        if not evaluator.can_access_resource(principal, owner_id, required):
            is_owner = owner_id is not None and str(principal.id) == str(owner_id)
            raise _deny(principal, required.scoped_to_self() if is_owner else required, request)
        return principal

    return dependency


def require_self(permission: str):
    """Dependency factory for routes acting on the caller's own record."""
    required = Permission.parse(permission).base

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        evaluator: PermissionEvaluator = request.app.state.evaluator
        if not evaluator.can_access_resource(principal, principal.id, required):
            raise _deny(principal, required.scoped_to_self(), request)
        return principal

    return dependency
