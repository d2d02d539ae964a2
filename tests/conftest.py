"""
tests/conftest.py -- Shared test fixtures for OpsGuard unit and integration tests.

This module provides:
  - FakeClock: a callable monotonic clock tests can advance without sleeping
  - make_test_store(): an isolated named shared-memory SQLite UserStore
  - add_user(): create a user with password and role grants in one call
  - store / make_user / clock / security: function-scoped core fixtures
  - catalog: the bundled role catalog (session-scoped)
  - api_client: TestClient with an owner JWT for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool and run_bounded()
runs store calls on worker threads. Plain :memory: DBs are per-connection and
would present a blank schema to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.catalog import PermissionCatalog, load_catalog
from auth.models import RoleAssignment, User
from auth.service import SecurityService, build_security_service
from auth.store import UserStore
from auth.throttle import RateLimiter, SuspiciousActivityDetector
from auth.tokens import PasswordVerifier, create_access_token, hash_password
from core.config import get_settings

OWNER_EMAIL = "owner@example.com"
OWNER_PASSWORD = "ownerpass123"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock stand-in. Call it for the time; advance() to move it."""

    def __init__(self, start: float = 10_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_test_store(db_suffix: str = "") -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so tests don't share
                   state. A random one is used when omitted.
    """
    suffix = db_suffix or uuid.uuid4().hex
    return UserStore(db_url=f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")


def add_user(store: UserStore, email: str, *roles: str, password: str = "password123", active: bool = True) -> int:
    """Create a user and grant `roles` directly in the store (no guard)."""
    uid = store.create_user(User(email=email, hashed_password=hash_password(password), is_active=active))
    for role in roles:
        store.insert_role_assignment(
            RoleAssignment(principal_id=uid, role=role, assigned_by=None, assigned_at=datetime.now(timezone.utc))
        )
    return uid


# ---------------------------------------------------------------------------
# Function-scoped core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def catalog() -> PermissionCatalog:
    """The bundled role catalog. Immutable, so one instance serves the session."""
    return load_catalog()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = make_test_store()
    yield user_store
    user_store.close()


@pytest.fixture
def make_user(store: UserStore):
    """Factory: make_user(email, *roles, password=..., active=...) -> user id in the test store."""

    def _make(email: str, *roles: str, password: str = "password123", active: bool = True) -> int:
        return add_user(store, email, *roles, password=password, active=active)

    return _make


@pytest.fixture
def security(catalog: PermissionCatalog, store: UserStore, clock: FakeClock) -> SecurityService:
    """SecurityService over a fresh store with default limits and a fake clock."""
    return SecurityService(
        catalog,
        store,
        PasswordVerifier(store),
        limiter=RateLimiter(max_attempts=5, window_minutes=15, clock=clock),
        detector=SuspiciousActivityDetector(threshold=3, window_minutes=5, clock=clock),
    )


# ---------------------------------------------------------------------------
# API fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, security: SecurityService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test objects into app.state so TestClient routes see
    an isolated test DB rather than the production database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.security = security
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_clock() -> FakeClock:
    """Clock driving the API client's limiter and detector."""
    return FakeClock()


@pytest.fixture(scope="module")
def api_client(api_clock: FakeClock) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. The owner
    user is created before the client starts and its JWT is returned for use
    in Authorization headers. base_url matches TrustedHostMiddleware.
    """
    user_store = make_test_store()
    uid = add_user(user_store, OWNER_EMAIL, "owner", password=OWNER_PASSWORD)
    token = create_access_token(user_id=uid, email=OWNER_EMAIL, expire_seconds=3600)

    security = build_security_service(
        get_settings(),
        user_store,
        PasswordVerifier(user_store),
        monotonic=api_clock,
    )

    app.router.lifespan_context = _patch_lifespan(user_store, security)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, token, uid

    user_store.close()
