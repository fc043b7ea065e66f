"""
api/routes/v1/auth.py -- Login, logout and session status endpoints.

Routes:
  POST /api/v1/auth/login    -- password login; creates a server-side session
  POST /api/v1/auth/logout   -- destroys the session; 200 even without one
  GET  /api/v1/auth/status   -- current session identity, never 401

Login sequence:
  1. slowapi per-IP limit                       -> 429 rate_limited
  2. AttemptTracker.is_locked(username)         -> 429 locked_out (attempt NOT recorded)
  3. authenticate_user() (timing-equalized)     -> on failure record_failed_attempt, 401
  4. reset_attempts(username), initialize_session, rotate session id, set cookie

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on login responses.
  Anti-enumeration: attempts are tracked by the submitted username whether or
  not the account exists, and the lockout/bad-credential responses are
  identical for both cases.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, LoginRequest, LoginResponse, SessionUser, StatusResponse
from auth.attempts import AttemptTracker
from auth.dependencies import get_optional_session
from auth.errors import LockedOut
from auth.models import SessionState
from auth.permissions import get_all_permissions
from auth.sessions import SessionGuard
from auth.store import SessionStore, UserStore
from auth.tokens import (
    authenticate_user,
    clear_session_cookie,
    generate_session_id,
    hash_session_id,
    read_session_cookie,
    set_session_cookie,
)
from core.config import get_settings

logger = logging.getLogger("hive.security")

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/login:   public -- exempt from session validation
# - POST /api/v1/auth/logout:  session optional
# - GET  /api/v1/auth/status:  session optional
router = APIRouter()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; start a session.

    Returns the same generic error for wrong username and wrong password
    ("bad_credentials") to avoid leaking username existence information.
    """
    tracker: AttemptTracker = request.app.state.attempt_tracker
    guard: SessionGuard = request.app.state.session_guard
    user_store: UserStore = request.app.state.user_store
    session_store: SessionStore = request.app.state.session_store
    username = body.username

    lock = tracker.is_locked(username)
    if lock.locked:
        logger.warning(
            "Login attempt while locked username=%s ip=%s remaining=%.0fs",
            username,
            _client_ip(request),
            lock.remaining_time,
        )
        raise LockedOut(lock.remaining_time)

    principal = authenticate_user(user_store, username, body.password)
    if principal is None:
        info = tracker.record_failed_attempt(username)
        remaining = tracker.remaining_before_lock(info.count)
        message = "Invalid username or password."
        if remaining > 0:
            message += f" {remaining} attempt{'s' if remaining != 1 else ''} remaining."
        resp = JSONResponse(
            status_code=401,
            content=ErrorResponse(
                error=ErrorDetail(code="bad_credentials", message=message, remaining_attempts=remaining)
            ).model_dump(exclude_none=True),
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    tracker.reset_attempts(username)

    permissions = get_all_permissions(principal, user_store.get_role_permissions)
    state = guard.initialize_session(principal, permissions)

    # Rotate: a pre-login session id must never become an authenticated one.
    previous = read_session_cookie(request)
    if previous:
        session_store.delete(hash_session_id(previous))
    raw_id = generate_session_id()
    session_store.save(hash_session_id(raw_id), state)
    if principal.id is not None:
        user_store.update_last_login(principal.id)

    logger.info("Successful login username=%s ip=%s role=%s", username, _client_ip(request), principal.role.value)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=SessionUser(
                user_id=principal.id,
                username=principal.username,
                role=principal.role,
                permissions=state.permissions,
                roles=sorted(principal.role_ids),
            )
        ).model_dump(mode="json"),
    )
    set_session_cookie(resp, raw_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
def logout(request: Request, session: SessionState | None = Depends(get_optional_session)) -> JSONResponse:
    """Destroy the server-side session and clear the cookie."""
    raw_id = read_session_cookie(request)
    if raw_id:
        request.app.state.session_store.delete(hash_session_id(raw_id))
    if session is not None:
        logger.info("User logged out username=%s", session.username)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp)
    return resp


@router.get("/auth/status", response_model=StatusResponse)
def status(session: SessionState | None = Depends(get_optional_session)) -> StatusResponse:
    """Report whether the caller has a live session, and as whom.

    permissions here is the display snapshot taken at login.
    """
    if session is None:
        return StatusResponse(authenticated=False)
    return StatusResponse(
        authenticated=True,
        user=SessionUser(
            user_id=session.user_id,
            username=session.username,
            role=session.role,
            permissions=list(session.permissions),
        ),
    )
