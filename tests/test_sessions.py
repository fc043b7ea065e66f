"""
tests/test_sessions.py -- Unit tests for auth/sessions.py (SessionGuard).

Covers:
  - initialize_session() stamps login_time, last_activity and the guard's token
  - validate(None) passes through
  - server_restart: token mismatch, checked before inactivity
  - inactivity_timeout: strictly greater than the window
  - renewal: an accepted request moves last_activity forward
  - exempt paths: public endpoints and static assets
"""

from __future__ import annotations

import re
import warnings
from pathlib import Path

import pytest

import auth.sessions
from auth.errors import ExpiryReason
from auth.models import AccountRole, Principal
from auth.sessions import SessionGuard, generate_generation_token

TIMEOUT = 600


@pytest.fixture
def guard(clock) -> SessionGuard:
    return SessionGuard(TIMEOUT, clock=clock, generation_token="gen_1_current")


@pytest.fixture
def principal() -> Principal:
    return Principal(username="alice", id=7, role=AccountRole.ADMIN)


class TestGenerationToken:
    def test_format(self) -> None:
        token = generate_generation_token(lambda: 1700000000.5)
        assert re.fullmatch(r"gen_1700000000500_[0-9a-f]{32}", token)

    def test_guards_get_distinct_tokens(self, clock) -> None:
        assert SessionGuard(TIMEOUT, clock=clock).generation_token != SessionGuard(TIMEOUT, clock=clock).generation_token

    def test_non_positive_timeout_rejected(self) -> None:
        with pytest.raises(ValueError):
            SessionGuard(0)


class TestInitializeSession:
    def test_fields(self, guard: SessionGuard, principal: Principal, clock) -> None:
        state = guard.initialize_session(principal, {"view_accounts", "manage_roles"})
        assert state.user_id == 7
        assert state.username == "alice"
        assert state.role is AccountRole.ADMIN
        assert state.login_time == clock()
        assert state.last_activity == clock()
        assert state.generation_token == "gen_1_current"
        assert state.permissions == ["manage_roles", "view_accounts"]


class TestValidate:
    def test_absent_session_passes(self, guard: SessionGuard) -> None:
        assert guard.validate(None) is None

    def test_active_session_is_renewed(self, guard: SessionGuard, principal: Principal, clock) -> None:
        state = guard.initialize_session(principal)
        clock.advance(120)
        assert guard.validate(state) is None
        assert state.last_activity == clock()
        assert state.login_time == clock() - 120

    def test_inactivity_boundary_is_exclusive(self, guard: SessionGuard, principal: Principal, clock) -> None:
        state = guard.initialize_session(principal)
        clock.advance(TIMEOUT)
        assert guard.validate(state) is None

    def test_inactivity_timeout(self, guard: SessionGuard, principal: Principal, clock) -> None:
        """Scenario: last activity at t, request at t + 601 -> inactivity_timeout."""
        state = guard.initialize_session(principal)
        clock.advance(TIMEOUT + 1)
        assert guard.validate(state) is ExpiryReason.INACTIVITY_TIMEOUT

    def test_sliding_window(self, guard: SessionGuard, principal: Principal, clock) -> None:
        """Steady activity keeps a session alive well past one window from login."""
        state = guard.initialize_session(principal)
        for _ in range(5):
            clock.advance(TIMEOUT - 10)
            assert guard.validate(state) is None
        assert clock() - state.login_time > TIMEOUT

    def test_restart_beats_recent_activity(self, principal: Principal, clock) -> None:
        """Scenario: session from a previous process, used one second ago -> server_restart."""
        old = SessionGuard(TIMEOUT, clock=clock, generation_token="gen_0_previous")
        state = old.initialize_session(principal)
        clock.advance(1)

        new = SessionGuard(TIMEOUT, clock=clock, generation_token="gen_1_current")
        assert new.validate(state) is ExpiryReason.SERVER_RESTART

    def test_restart_checked_before_inactivity(self, principal: Principal, clock) -> None:
        old = SessionGuard(TIMEOUT, clock=clock, generation_token="gen_0_previous")
        state = old.initialize_session(principal)
        clock.advance(TIMEOUT * 3)

        new = SessionGuard(TIMEOUT, clock=clock, generation_token="gen_1_current")
        assert new.validate(state) is ExpiryReason.SERVER_RESTART

    def test_expired_session_is_not_renewed(self, guard: SessionGuard, principal: Principal, clock) -> None:
        state = guard.initialize_session(principal)
        before = state.last_activity
        clock.advance(TIMEOUT + 1)
        guard.validate(state)
        assert state.last_activity == before


class TestExemptPaths:
    @pytest.mark.parametrize("path", ["/api/v1/auth/login", "/api/v1/health"])
    def test_public_endpoints(self, guard: SessionGuard, path: str) -> None:
        assert guard.is_exempt(path) is True

    @pytest.mark.parametrize("path", ["/index.html", "/static/app.js", "/assets/logo.svg", "/favicon.ico"])
    def test_static_assets(self, guard: SessionGuard, path: str) -> None:
        assert guard.is_exempt(path) is True

    @pytest.mark.parametrize("path", ["/api/v1/auth/status", "/api/v1/admin/accounts", "/api/v1/auth/logout"])
    def test_protected_paths(self, guard: SessionGuard, path: str) -> None:
        assert guard.is_exempt(path) is False

    def test_custom_public_paths(self, clock) -> None:
        guard = SessionGuard(TIMEOUT, clock=clock, public_paths={"/open"})
        assert guard.is_exempt("/open") is True
        assert guard.is_exempt("/api/v1/health") is False


def test_module_source_compiles_without_warnings():
    """Docstring diagrams must not contain invalid escape sequences."""
    path = Path(auth.sessions.__file__)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(path.read_text(encoding="utf-8"), str(path), "exec")
