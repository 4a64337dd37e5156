"""
tests/conftest.py -- Shared test fixtures for SessionGuard tests.

This module provides:
  - store: UserStore on a file-backed SQLite DB in tmp_path
  - clock: a controllable UTC clock injected into the services
  - mailer: FakeMailer (tests/support.py) recording notify() calls
  - services: the full object graph (audit, registry, reset flow, service)
  - services: wired with the same store, clock and mailer
  - api_client: TestClient over the real app with a patched lifespan

Design: file-backed SQLite (not :memory:) is required because the services
run store calls through asyncio.to_thread and TestClient runs handlers in a
thread pool. Plain :memory: DBs are per-connection and would present a blank
schema to each worker thread; a file also gives real writer locking, which
the concurrent-login tests depend on.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from auth.audit import AuditLog
from auth.devices import DeviceRegistry
from auth.models import ROLE_ADMIN
from auth.reset import PasswordResetFlow
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings
from tests.support import CHROME_WIN, Clock, FakeMailer, RecordingTransport, make_user

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'auth.db'}"


@pytest.fixture
def store(db_url) -> Generator[UserStore, None, None]:
    s = UserStore(db_url)
    yield s
    s.close()


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def services(store, clock, mailer) -> SimpleNamespace:
    """The full service graph over one store, sharing the test clock."""
    settings = get_settings()
    audit_log = AuditLog(store)
    registry = DeviceRegistry(store, clock=clock)
    reset_flow = PasswordResetFlow(store, mailer, audit_log, settings, clock=clock)
    service = AuthService(store, registry, reset_flow, mailer, audit_log, settings, clock=clock)
    return SimpleNamespace(
        store=store,
        audit=audit_log,
        registry=registry,
        reset=reset_flow,
        service=service,
        mailer=mailer,
        clock=clock,
    )


def _patch_lifespan(user_store: UserStore, transport: RecordingTransport):
    """Return a lifespan that wires the test store and a recording mail transport."""
    from api.main import build_services
    from mailer.dispatch import EmailDispatcher

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, user_store, mailer=EmailDispatcher(transport))
        yield

    return test_lifespan


@pytest.fixture
def api_client(tmp_path) -> Generator[SimpleNamespace, None, None]:
    """Yield a namespace with the TestClient, the store, the mail transport and
    an admin + regular user that already exist.

    The rate limiter's in-memory counters are reset so each test starts with a
    full login budget.
    """
    from api.limiter import limiter
    from api.main import app

    user_store = UserStore(f"sqlite:///{tmp_path / 'api.db'}")
    admin_id = make_user(user_store, "admin@example.com", role=ROLE_ADMIN, name="Admin")
    user_id = make_user(user_store, "user@example.com", name="Regular User")
    transport = RecordingTransport()

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(user_store, transport)

    with TestClient(app, raise_server_exceptions=True, headers={"User-Agent": CHROME_WIN}) as client:
        yield SimpleNamespace(
            client=client,
            store=user_store,
            transport=transport,
            admin_id=admin_id,
            user_id=user_id,
        )

    user_store.close()
