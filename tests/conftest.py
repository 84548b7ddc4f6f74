"""
tests/conftest.py -- Shared test fixtures for StaffGate.

This module provides:
  - settings: a Settings value with fixed keys and the minimum bcrypt cost
  - RecordingNotifier / recorder: captures outbound email instead of sending
  - FakeClock / clock: simulated time for token-expiry tests
  - store, dispatcher, facade: in-memory wiring for unit tests
  - api_client: TestClient over a SqlStore for API integration tests

Design: API tests use named shared-memory SQLite URIs (not plain :memory:)
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any core import so get_settings()
auto-generates signing keys in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Generator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate signing keys in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import create_app
from auth.facade import AuthFacade
from auth.memory_store import InMemoryStore
from auth.notifier import NotificationDispatcher
from auth.store import SqlStore
from core.config import Settings

ADMIN_EMAIL = "admin@staffgate.test"
ADMIN_PASSWORD = "adminpass123"
PASSWORD = "correct-horse-9"


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "k" * 32 + "access-signing-key",
        "refresh_secret_key": "r" * 32 + "refresh-signing-key",
        "bcrypt_rounds": 4,
        "frontend_url": "http://app.test",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


@dataclass
class SentEmail:
    to: str
    template_id: str
    variables: dict


class RecordingNotifier:
    """Notifier that keeps every send in memory."""

    def __init__(self) -> None:
        self.sent: list[SentEmail] = []
        self._lock = threading.Lock()

    def send(self, to: str, template_id: str, variables: dict) -> None:
        with self._lock:
            self.sent.append(SentEmail(to, template_id, dict(variables)))

    def to(self, email: str, template_id: str | None = None) -> list[SentEmail]:
        with self._lock:
            return [m for m in self.sent if m.to == email and (template_id is None or m.template_id == template_id)]

    def last_token(self, email: str, template_id: str) -> str:
        """Return the raw token from the newest link of ``template_id`` sent to ``email``."""
        mail = self.to(email, template_id)[-1]
        url = mail.variables.get("confirmation_url") or mail.variables["reset_url"]
        return url.rsplit("/", 1)[1]

    def clear(self) -> None:
        with self._lock:
            self.sent.clear()


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit-test wiring (in-memory store)
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def recorder() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def dispatcher(recorder: RecordingNotifier) -> Generator[NotificationDispatcher, None, None]:
    d = NotificationDispatcher(recorder, max_workers=1)
    yield d
    d.close()


@pytest.fixture
def facade(store, settings, dispatcher, clock) -> AuthFacade:
    return AuthFacade(store, settings, dispatcher, clock)


def signup_verified(facade: AuthFacade, recorder: RecordingNotifier, email: str, name: str = "Test Employee"):
    """Sign up and confirm the email. Returns the profile (still pending unless auto-activated)."""
    facade.sign_up(email, PASSWORD, name)
    facade.dispatcher.flush()
    facade.confirm_email(recorder.last_token(email, "email_confirmation"))
    return facade.store.get_profile_by_account(facade.store.get_account_by_email(email).id)


def active_employee(facade: AuthFacade, recorder: RecordingNotifier, admin_id: str, email: str):
    """Sign up, confirm and approve an employee. Returns the approved profile."""
    profile = signup_verified(facade, recorder, email)
    return facade.admin_approve(profile.id, admin_id)


@pytest.fixture
def admin(facade: AuthFacade):
    """An active, verified administrator. Returns (account, profile)."""
    result = facade.create_admin(ADMIN_EMAIL, ADMIN_PASSWORD, "Ada Admin")
    return result.account, result.profile


# ---------------------------------------------------------------------------
# API integration wiring
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """The limiter is process-wide; start every test with empty counters."""
    limiter.reset()


@dataclass
class ApiHarness:
    client: TestClient
    admin_headers: dict
    recorder: RecordingNotifier

    @property
    def facade(self) -> AuthFacade:
        return self.client.app.state.facade

    def flush(self) -> None:
        self.client.app.state.dispatcher.flush()


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    The TestClient uses the real app factory with an isolated shared-memory
    SqlStore per test module. An active admin is created before the first
    request and signed in for the Authorization header.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    store = SqlStore(f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    recorder = RecordingNotifier()
    app = create_app(make_settings(), store=store, notifier=recorder)

    with TestClient(app, raise_server_exceptions=True) as client:
        facade: AuthFacade = client.app.state.facade
        facade.create_admin(ADMIN_EMAIL, ADMIN_PASSWORD, "Ada Admin")
        tokens = facade.sign_in(ADMIN_EMAIL, ADMIN_PASSWORD).tokens
        yield ApiHarness(client, {"Authorization": f"Bearer {tokens.access_token}"}, recorder)

    store.close()
