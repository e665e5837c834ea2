"""
tests/conftest.py -- Shared test fixtures for SessionAuth unit and integration tests.

This module provides:
  - make_store(): an isolated in-memory AuthStore per call
  - FakeClock / RecordingNotifier: controllable time and captured reset links
  - store, clock, sessions, reset_flow, gateway: unit-level fixtures
  - api_client: TestClient for the JSON API
  - web_client: TestClient with follow_redirects=False for web route tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
store gets a uuid-suffixed name so no two tests share rows.

DEBUG, BCRYPT_ROUNDS and ALLOWED_HOSTS must be set before any auth/core
import: get_settings() is read once at module load by auth.tokens and
api.main.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver"]')

import pytest
from fastapi.testclient import TestClient

from api.main import build_services
from asgi import app
from auth.gateway import AuthGateway
from auth.reset import PasswordResetFlow
from auth.sessions import SessionManager
from auth.store import AuthStore

SESSION_TTL = 7 * 24 * 60 * 60
RESET_TTL = 60 * 60

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_store(prefix: str = "unit") -> AuthStore:
    """Create an AuthStore on a fresh named shared-memory database."""
    return AuthStore(f"sqlite:///file:test_{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """ResetNotifier that keeps every link instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, datetime]] = []

    def send_reset_link(self, email: str, reset_url: str, expires_at: datetime) -> None:
        self.sent.append((email, reset_url, expires_at))

    @property
    def last_token(self) -> str:
        _email, url, _expires = self.sent[-1]
        return parse_qs(urlparse(url).query)["token"][0]


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sessions(store: AuthStore, clock: FakeClock) -> SessionManager:
    return SessionManager(store, ttl_seconds=SESSION_TTL, clock=clock)


@pytest.fixture
def reset_flow(store: AuthStore, clock: FakeClock, notifier: RecordingNotifier) -> PasswordResetFlow:
    return PasswordResetFlow(
        store,
        ttl_seconds=RESET_TTL,
        reset_url_base="http://testserver/reset-password",
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def gateway(store: AuthStore, sessions: SessionManager) -> AuthGateway:
    return AuthGateway(store, sessions)


# ---------------------------------------------------------------------------
# Integration fixtures
#
# Function-scoped: tests log in and out, so each one needs a fresh cookie
# jar and a fresh database.
# ---------------------------------------------------------------------------


def _patch_lifespan(test_store: AuthStore, test_notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Runs the production build_services() wiring against the test store and
    swaps in a RecordingNotifier so tests can read issued reset links. The
    purge loop is not started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, test_store)
        app.state.reset_flow.notifier = test_notifier
        app.state.purge_task = None
        yield

    return test_lifespan


def _client(prefix: str, **client_kwargs) -> Generator[tuple[TestClient, AuthStore, RecordingNotifier], None, None]:
    test_store = make_store(prefix)
    test_notifier = RecordingNotifier()
    app.router.lifespan_context = _patch_lifespan(test_store, test_notifier)
    with TestClient(app, raise_server_exceptions=True, **client_kwargs) as client:
        yield client, test_store, test_notifier
    test_store.close()


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, AuthStore, RecordingNotifier], None, None]:
    """Yield (client, store, notifier) for JSON API integration tests."""
    yield from _client("api")


@pytest.fixture
def web_client() -> Generator[tuple[TestClient, AuthStore, RecordingNotifier], None, None]:
    """Yield (client, store, notifier) for web route integration tests.

    follow_redirects=False is essential for web route tests: we assert on
    redirect *locations* (e.g. 302 to /login), which are invisible once
    the client follows the redirect and returns the final 200 response.
    """
    yield from _client("web", follow_redirects=False)
