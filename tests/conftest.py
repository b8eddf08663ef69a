"""
tests/conftest.py -- Shared test fixtures for RotaGuard.

This module provides:
  - FakeClock / clock: a controllable time source injected into every component
  - settings: Settings with fixed secrets and a short session cap
  - user_store / ledger / issuer / service: wired over one isolated database
  - make_user: helper that provisions an active user with a known password
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because UserStore and SessionLedger each open their own engine, and
TestClient runs sync route handlers in a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each of them. The named
URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process. Each fixture
gets a uuid-suffixed name so tests never share state.

The DEBUG env var must be set before any core/auth import so get_settings()
can auto-generate signing secrets instead of raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any core/auth import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.ledger import SessionLedger
from auth.models import User
from auth.passwords import hash_password
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenIssuer
from core.config import Settings

TEST_PASSWORD = "correct horse battery staple"  # noqa: S105 # nosec B105 -- test fixture


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def memory_db_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "access_token_secret": "a" * 48,
        "refresh_token_secret": "r" * 48,
        "jwt_issuer": "rotaguard-test",
        "jwt_audience": "rotaguard-test-clients",
        "max_sessions_per_user": 5,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def db_url() -> str:
    return memory_db_url("test_auth")


@pytest.fixture
def user_store(db_url: str, clock: FakeClock) -> Generator[UserStore, None, None]:
    store = UserStore(db_url, clock=clock)
    yield store
    store.close()


@pytest.fixture
def ledger(db_url: str, clock: FakeClock, settings: Settings) -> Generator[SessionLedger, None, None]:
    led = SessionLedger(db_url, max_sessions=settings.max_sessions_per_user, clock=clock)
    yield led
    led.close()


@pytest.fixture
def issuer(settings: Settings, ledger: SessionLedger, user_store: UserStore, clock: FakeClock) -> TokenIssuer:
    return TokenIssuer(settings, ledger, user_store, clock=clock)


@pytest.fixture
def service(user_store: UserStore, issuer: TokenIssuer, ledger: SessionLedger) -> AuthService:
    return AuthService(user_store, issuer, ledger)


@pytest.fixture
def make_user(user_store: UserStore):
    """Return a factory that creates a user and returns the stored User."""

    def _make(email: str = "alice@example.com", password: str = TEST_PASSWORD, is_active: bool = True) -> User:
        uid = user_store.create_user(User(email=email, hashed_password=hash_password(password), is_active=is_active))
        return user_store.get_by_id(uid)

    return _make


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, user_store: UserStore, ledger: SessionLedger):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the configured database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, settings, user_store, ledger)
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, User], None, None]:
    """Yield (client, user) for HTTP integration tests.

    Uses the real system clock: tokens go through the full request path
    exactly as in production. The user's password is TEST_PASSWORD.
    """
    settings = make_settings()
    url = memory_db_url("test_api")
    user_store = UserStore(url)
    ledger = SessionLedger(url, max_sessions=settings.max_sessions_per_user)

    uid = user_store.create_user(User(email="api@example.com", hashed_password=hash_password(TEST_PASSWORD)))
    user = user_store.get_by_id(uid)

    app.router.lifespan_context = _patch_lifespan(settings, user_store, ledger)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, user

    ledger.close()
    user_store.close()
