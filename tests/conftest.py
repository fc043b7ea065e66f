"""
tests/conftest.py -- Shared test fixtures for Hive panel gateway tests.

This module provides:
  - FakeClock: a controllable time source injected into the tracker, guard
    and session store so time-dependent behaviour is deterministic
  - _make_test_stores(): isolated named shared-memory SQLite stores
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - harness: a per-test TestClient plus direct handles on every service

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

DEBUG, ALLOWED_HOSTS and ENCRYPTION_KEY must be set before any api/auth/core
import so get_settings() builds a usable test configuration.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: environment before any project import (get_settings() is cached).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-0123456789abcdef")

import bcrypt
import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.attempts import AttemptTracker, LockoutPolicy
from auth.cipher import FieldCipher
from auth.models import AccountRole, Principal, Role
from auth.permissions import VIEW_ACCOUNTS
from auth.sessions import SessionGuard
from auth.store import SessionStore, UserStore
from core.config import get_settings

# Per-IP throttling would trip across tests that log in repeatedly.
limiter.enabled = False

ENCRYPTION_KEY = os.environ["ENCRYPTION_KEY"]
INACTIVITY_SECONDS = 600
TIERS = ((5, 300), (10, 900), (20, 3600))

PASSWORDS = {
    "root": "root-password-123",
    "viewer": "viewer-password-123",
    "plain": "plain-password-123",
}

# Low-cost hashes computed once; the default bcrypt cost would make every
# harness setup noticeably slow.
_HASHES = {name: bcrypt.hashpw(pw.encode(), bcrypt.gensalt(rounds=4)).decode() for name, pw in PASSWORDS.items()}


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _shared_memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _make_test_stores(clock: FakeClock) -> tuple[UserStore, SessionStore]:
    """Create one isolated shared-memory database and both stores on top of it."""
    url = _shared_memory_url("test_hive")
    return UserStore(db_url=url), SessionStore(db_url=url, ttl_seconds=INACTIVITY_SECONDS, clock=clock)


def _seed(user_store: UserStore) -> dict[str, str]:
    """Seed three principals and one role. Returns {name: role_id}.

    root    -- superadmin, no grants
    viewer  -- user holding role "Account viewers" (view_accounts)
    plain   -- user with nothing
    """
    viewers = user_store.create_role(Role(name="Account viewers", permissions=frozenset({VIEW_ACCOUNTS})))
    user_store.create_user(Principal(username="root", role=AccountRole.SUPERADMIN, hashed_password=_HASHES["root"]))
    user_store.create_user(
        Principal(username="viewer", hashed_password=_HASHES["viewer"], role_ids=frozenset({viewers}))
    )
    user_store.create_user(Principal(username="plain", hashed_password=_HASHES["plain"]))
    return {"viewers": viewers}


def _patch_lifespan(services: dict):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine so shutdown's .cancel() has a
    real asyncio.Task to act on.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        for name, value in services.items():
            setattr(app.state, name, value)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Integration harness
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    client: TestClient
    clock: FakeClock
    user_store: UserStore
    session_store: SessionStore
    tracker: AttemptTracker
    role_ids: dict[str, str]

    def login(self, username: str, password: str | None = None):
        return self.client.post(
            "/api/v1/auth/login",
            json={"username": username, "password": password if password is not None else PASSWORDS[username]},
        )

    def restart(self) -> None:
        """Simulate a process restart: a new guard means a new generation token."""
        app.state.session_guard = SessionGuard(INACTIVITY_SECONDS, clock=self.clock)

    def set_cipher(self, cipher: FieldCipher) -> None:
        app.state.field_cipher = cipher

    @property
    def session_cookie(self) -> str | None:
        return self.client.cookies.get(get_settings().session_cookie_name)


@pytest.fixture
def harness(clock: FakeClock) -> Generator[Harness, None, None]:
    """Yield a Harness around a fresh app state for one test.

    Every service shares the FakeClock, so clock.advance() moves session
    inactivity, lockout expiry and session-store TTLs together.
    """
    user_store, session_store = _make_test_stores(clock)
    role_ids = _seed(user_store)
    tracker = AttemptTracker(LockoutPolicy(TIERS), clock=clock)

    app.router.lifespan_context = _patch_lifespan(
        {
            "user_store": user_store,
            "session_store": session_store,
            "attempt_tracker": tracker,
            "session_guard": SessionGuard(INACTIVITY_SECONDS, clock=clock),
            "field_cipher": FieldCipher(ENCRYPTION_KEY),
        }
    )

    with TestClient(app, raise_server_exceptions=True) as client:
        yield Harness(client, clock, user_store, session_store, tracker, role_ids)

    session_store.close()
    user_store.close()
