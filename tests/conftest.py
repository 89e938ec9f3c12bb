"""
tests/conftest.py -- Shared test fixtures for the marketplace auth suite.

This module provides:
  - store / service fixtures: isolated in-memory DB + fully wired AuthService
  - client fixture: TestClient around create_app() using the same store,
    mailer and clock, so tests can mix HTTP calls with direct store checks
  - verified_account / admin_account: ready-to-login accounts

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
test gets a fresh name, so no state leaks between tests.

SECRET_KEY must be set before any core/ import so get_settings() validates.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator

from tests.fakes import ADMIN_EMAIL, ADMIN_PASSWORD, TEST_SECRET_KEY, USER_EMAIL, USER_PASSWORD, FakeClock, FakeMailer

# CRITICAL: Set SECRET_KEY before any core/ import so get_settings() does not
# refuse to start.
os.environ.setdefault("SECRET_KEY", TEST_SECRET_KEY)

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import create_app
from auth.models import Account
from auth.service import AuthService
from auth.store import AccountStore
from core.config import Settings


def make_settings(**overrides) -> Settings:
    values = {"secret_key": TEST_SECRET_KEY, "database_url": "sqlite:///:memory:"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Every test starts with empty slowapi counters (the limiter is module-global)."""
    limiter.reset()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def service(settings: Settings, store: AccountStore, mailer: FakeMailer, clock: FakeClock) -> AuthService:
    return AuthService.from_settings(settings, store, mailer, clock=clock)


@pytest.fixture
def client(
    settings: Settings, store: AccountStore, mailer: FakeMailer, clock: FakeClock
) -> Generator[TestClient, None, None]:
    """TestClient over the real app; shares store, mailer and clock with the other fixtures."""
    app = create_app(settings, store=store, mailer=mailer, clock=clock)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def verified_account(service: AuthService, mailer: FakeMailer) -> Account:
    """A registered USER whose email is already verified. Password: USER_PASSWORD."""
    service.register(USER_EMAIL, USER_PASSWORD, "Buyer")
    return service.verify_email(USER_EMAIL, mailer.verification_tokens[USER_EMAIL])


@pytest.fixture
def admin_account(service: AuthService) -> Account:
    return service.create_admin(ADMIN_EMAIL, ADMIN_PASSWORD, "Admin")
