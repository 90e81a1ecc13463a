"""
api/main.py -- FastAPI application entry point for AccessGate.

Exposes the authorization-and-audit core over HTTP: sessions, user and role
management, and the read-only audit trail.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, services, default roles, retention purge
task) and shutdown (cancel purge task, close DB connections) symmetrically.

Everything a request needs lives on app.state and is built by
_wire_services(); tests call the same function with in-memory stores.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import FieldError, HealthResponse, failure
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from audit.interceptor import AuditLogger
from audit.store import AuditStore
from auth.directory import RoleService, UserService
from auth.permissions import PermissionEvaluator
from auth.seed import seed_defaults
from auth.sessions import ResetNotifier, SessionManager
from auth.store import RoleStore, UserStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings
from core.errors import ServiceError

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("accessgate.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def _wire_services(
    app: FastAPI,
    settings: Settings,
    user_store: UserStore,
    role_store: RoleStore,
    audit_store: AuditStore,
    notifier: ResetNotifier | None = None,
) -> None:
    """Build every request-time collaborator once and hang it on app.state.

    Pattern: composition root. Nothing below the API layer looks anything up
    globally; each service receives its collaborators here.
    """
    app.state.settings = settings
    app.state.user_store = user_store
    app.state.role_store = role_store
    app.state.audit_store = audit_store
    app.state.evaluator = PermissionEvaluator()
    app.state.issuer = TokenIssuer.from_settings(settings)
    app.state.audit = AuditLogger(audit_store)
    app.state.sessions = SessionManager(
        user_store,
        role_store,
        app.state.issuer,
        app.state.audit,
        settings,
        notifier,
    )
    app.state.users = UserService(user_store, role_store, settings.bcrypt_rounds)
    app.state.roles = RoleService(role_store, user_store, settings.super_role_name)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop audit records older than AUDIT_RETENTION_DAYS every 6 hours.

    Runs as a background asyncio task started in lifespan startup.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        _purge_once(app)


def _purge_once(app: FastAPI) -> int:
    """One retention pass. A failed pass is logged and retried on the next tick."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=app.state.settings.audit_retention_days)
    try:
        removed = app.state.audit_store.purge_older_than(cutoff)
    except Exception:
        logger.exception("Audit retention purge failed")
        return 0
    if removed:
        logger.info("Audit retention purge removed %d record(s)", removed)
    return removed


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- every service depends on them.
      2. Seeding second -- registration needs the default role to exist.
      3. Purge task last -- references app.state.audit_store.
    """
    settings = get_settings()
    logger.info("AccessGate API starting up")
    user_store = UserStore(settings.database_url)
    role_store = RoleStore(settings.database_url)
    audit_store = AuditStore(settings.database_url)
    _wire_services(app, settings, user_store, role_store, audit_store)
    seed_defaults(user_store, role_store, settings)
    logger.info("Stores initialized, default roles ensured")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    user_store.close()
    role_store.close()
    audit_store.close()
    logger.info("AccessGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="AccessGate API",
    description="Role-based access control with token sessions and an audit trail.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same envelope so API clients can parse errors
# uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Map any ServiceError subclass to its status code and envelope."""
    return JSONResponse(status_code=exc.status_code, content=failure(exc.message, code=exc.code))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=failure("Too many requests, please try again later.", code="rate_limited"),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


def _field_name(loc: tuple) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "header")]
    return ".".join(parts) or "request"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one {field, message} entry per failed constraint."""
    errors = [
        FieldError(
            field=_field_name(tuple(err.get("loc", ()))),
            message=str(err.get("msg", "")).removeprefix("Value error, "),
        )
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=failure("Validation failed.", errors=errors, code="validation_error"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured envelope for FastAPI/Starlette HTTP exceptions (404 route, 405, ...)."""
    return JSONResponse(
        status_code=exc.status_code,
        content=failure(str(exc.detail), code=f"http_{exc.status_code}"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=failure("An unexpected error occurred.", code="internal_error"),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
