"""
tests/conftest.py -- Shared test fixtures for AccessGate unit and integration tests.

This module provides:
  - stores: fresh in-memory UserStore / RoleStore / AuditStore with default roles
  - issuer, audit_logger, sessions: core services wired over `stores`
  - make_user: factory fixture that inserts a user with a named role
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient with a super-admin JWT for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient because route handlers run in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. Unit fixtures use plain :memory:, which the stores pin to a single
shared connection (StaticPool).

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates signing secrets in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import functools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: set before any core/auth/api import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import _wire_services, app
from audit.interceptor import AuditLogger
from audit.store import AuditStore
from auth.models import Role, User
from auth.seed import ensure_default_roles
from auth.sessions import SessionManager
from auth.store import RoleStore, UserStore
from auth.tokens import TokenIssuer, hash_password
from core.config import get_settings

PASSWORD = "Passw0rd"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


@dataclass
class Stores:
    users: UserStore
    roles: RoleStore
    audit: AuditStore
    default_roles: dict[str, Role]

    def close(self) -> None:
        self.users.close()
        self.roles.close()
        self.audit.close()


def _make_stores(db_url: str) -> Stores:
    users = UserStore(db_url)
    roles = RoleStore(db_url)
    audit = AuditStore(db_url)
    return Stores(users=users, roles=roles, audit=audit, default_roles=ensure_default_roles(roles))


def _create_user(
    stores: Stores,
    email: str,
    role_name: str = "user",
    password: str = PASSWORD,
    is_active: bool = True,
) -> User:
    """Insert a user holding role_name and return it as stored."""
    role = stores.roles.get_by_name(role_name)
    user_id = stores.users.create_user(
        User(
            first_name="Test",
            last_name=role_name.title(),
            email=email,
            role_id=role.id,
            hashed_password=hash_password(password, rounds=4),
            is_active=is_active,
        )
    )
    return stores.users.get_by_id(user_id)


def bearer(issuer: TokenIssuer, stores: Stores, user: User) -> dict[str, str]:
    """Authorization header carrying a fresh access token for user."""
    role = stores.roles.get_by_id(user.role_id)
    return {"Authorization": f"Bearer {issuer.issue_access(user, role)}"}


# ---------------------------------------------------------------------------
# Unit fixtures -- function scoped, plain in-memory SQLite
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def stores() -> Generator[Stores, None, None]:
    s = _make_stores("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def make_user(stores: Stores):
    """Factory: make_user(email, role_name="user", password=PASSWORD, is_active=True) -> User."""
    return functools.partial(_create_user, stores)


@pytest.fixture
def issuer(settings) -> TokenIssuer:
    return TokenIssuer.from_settings(settings)


@pytest.fixture
def audit_logger(stores: Stores) -> AuditLogger:
    return AuditLogger(stores.audit)


class RecordingNotifier:
    """ResetNotifier that keeps every delivered token in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[User, str]] = []

    def send_password_reset(self, user, token, expires_at) -> None:
        self.sent.append((user, token))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sessions(stores, issuer, audit_logger, settings, notifier) -> SessionManager:
    return SessionManager(stores.users, stores.roles, issuer, audit_logger, settings, notifier)


# ---------------------------------------------------------------------------
# Integration fixtures -- one TestClient per test module
# ---------------------------------------------------------------------------


def _patch_lifespan(stores: Stores):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state through the same
    _wire_services() the real lifespan uses, so routes see production
    wiring over isolated DBs.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        _wire_services(app, get_settings(), stores.users, stores.roles, stores.audit)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    stores: Stores
    admin: User
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def headers_for(self, user: User) -> dict[str, str]:
        return bearer(self.client.app.state.issuer, self.stores, user)


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. A
    super-admin user is created before the client starts and its access
    token is ready for Authorization headers.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    stores = _make_stores(f"sqlite:///file:test_{suffix}?mode=memory&cache=shared&uri=true")
    admin = _create_user(stores, "admin@accessgate.test", role_name="super-admin")

    app.router.lifespan_context = _patch_lifespan(stores)

    with TestClient(app, raise_server_exceptions=True) as client:
        token = client.app.state.issuer.issue_access(admin, stores.roles.get_by_name("super-admin"))
        yield ApiContext(client=client, stores=stores, admin=admin, token=token)

    stores.close()
