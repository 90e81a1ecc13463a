"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/register         -- create account + sign in (public, rate limited)
  POST /api/v1/auth/login            -- password login (public, rate limited)
  POST /api/v1/auth/refresh          -- rotate access + refresh tokens (public)
  POST /api/v1/auth/forgot-password  -- issue a reset token (public, rate limited)
  POST /api/v1/auth/reset-password   -- set a new password with a reset token (public)
  POST /api/v1/auth/logout           -- record logout (requires auth)
  POST /api/v1/auth/change-password  -- change own password (requires auth)
  GET  /api/v1/auth/profile          -- current user with role (requires auth)

Security:
  [H2] register, login and forgot-password are rate-limited per IP.
  [C1] SessionManager.login() provides timing equalization -- never inline
       get_by_email() + verify_password() here.
  [M5] Cache-Control: no-store on every response that carries tokens.

Handlers that hash or verify passwords are plain `def` so bcrypt runs in the
thread pool, not on the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import FORGOT_PASSWORD_LIMIT, LOGIN_LIMIT, REGISTER_LIMIT, limiter
from api.models import (
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    ok,
)
from audit.interceptor import AuditContext, audited
from audit.models import AuditAction, AuditResource
from auth.dependencies import get_current_principal
from auth.models import Principal
from auth.sessions import FORGOT_PASSWORD_MESSAGE, SessionManager

router = APIRouter()


def _sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def _registered_user_id(request: Request, data: dict) -> int:
    return data["user"]["id"]


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(REGISTER_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=Envelope, status_code=201)
@audited(AuditAction.CREATE_USER, AuditResource.USERS, capture_after=True, resource_id=_registered_user_id)
def register(request: Request, response: Response, body: RegisterRequest) -> Envelope:
    """Create an account with the default role (or body.role_id) and sign it in.

    Any existing role may be requested here, super-admin included, unless
    ALLOW_REGISTER_ROLE_ID is false.

    The CREATE_USER record's actor is the new account itself: there is no
    principal yet, so the interceptor falls back to data.user.id.
    """
    result = _sessions(request).register(body.model_dump(mode="json"), AuditContext.from_request(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return ok("User registered successfully.", result)


@limiter.limit(LOGIN_LIMIT)  # [H2]
@router.post("/auth/login", response_model=Envelope)
def login(request: Request, response: Response, body: LoginRequest) -> Envelope:
    """Authenticate with email and password; returns both tokens.

    Wrong email and wrong password produce the same 401 body.
    """
    result = _sessions(request).login(body.email, body.password, AuditContext.from_request(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return ok("Login successful.", result)


@router.post("/auth/refresh", response_model=Envelope)
def refresh(request: Request, response: Response, body: RefreshRequest) -> Envelope:
    """Exchange a refresh token for a fresh access + refresh pair."""
    result = _sessions(request).refresh(body.refresh_token, AuditContext.from_request(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return ok("Token refreshed successfully.", result)


@limiter.limit(FORGOT_PASSWORD_LIMIT)  # [H2]
@router.post("/auth/forgot-password", response_model=Envelope)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> Envelope:
    """Always answers with the same message, whether or not the email exists."""
    token = _sessions(request).forgot_password(body.email, AuditContext.from_request(request))
    return ok(FORGOT_PASSWORD_MESSAGE, {"reset_token": token} if token else None)


@router.post("/auth/reset-password", response_model=Envelope)
def reset_password(request: Request, body: ResetPasswordRequest) -> Envelope:
    _sessions(request).reset_password(body.token, body.new_password, AuditContext.from_request(request))
    return ok("Password has been reset successfully.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=Envelope)
async def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> Envelope:
    """Record the logout. Tokens are stateless; the client discards them."""
    _sessions(request).logout(principal.id, AuditContext.from_request(request))
    return ok("Logged out successfully.")


@router.post("/auth/change-password", response_model=Envelope)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> Envelope:
    _sessions(request).change_password(
        principal.id,
        body.current_password,
        body.new_password,
        AuditContext.from_request(request),
    )
    return ok("Password changed successfully.")


@router.get("/auth/profile", response_model=Envelope)
async def profile(request: Request, principal: Principal = Depends(get_current_principal)) -> Envelope:
    return ok("Profile retrieved successfully.", _sessions(request).profile(principal.id))
