"""
api/main.py -- FastAPI application entry point for the Hive panel gateway.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests           -- one access-log line per request with latency
  2. TrustedHostMiddleware  -- rejects requests with unexpected Host headers
  3. CORSMiddleware         -- adds CORS headers for allowed browser origins
  4. session_validation     -- loads the session, runs SessionGuard.validate(),
                               renews last_activity or answers 401 with a reason
  5. SlowAPIMiddleware      -- enforces per-route rate limits from api.limiter

Lifespan is the composition root. It constructs exactly one of each stateful
service -- UserStore, SessionStore, AttemptTracker, SessionGuard (and with it
this process's generation token), FieldCipher -- and hangs them on app.state.
Tests swap the lifespan to inject their own instances and clocks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.account import router as account_router
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.attempts import AttemptTracker, LockoutPolicy
from auth.cipher import FieldCipher
from auth.dependencies import get_current_session
from auth.errors import (
    AuthenticationExpired,
    AuthError,
    DecryptionFailed,
    EncryptionMisconfigured,
    LockedOut,
    NotAuthenticated,
    PermissionDenied,
)
from auth.models import SessionState
from auth.sessions import SessionGuard
from auth.store import SessionStore, UserStore
from auth.tokens import clear_session_cookie, ensure_default_admin, hash_session_id, read_session_cookie
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("hive.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: float) -> None:
    """Bound in-memory attempt records and reclaim lapsed session rows.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        app.state.attempt_tracker.sweep()
        purged = await run_in_threadpool(app.state.session_store.purge_expired)
        if purged:
            logger.info("Purged %d expired sessions", purged)


# ---------------------------------------------------------------------------
# Lifespan -- composition root
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Construct the process-wide auth services and tear them down on shutdown.

    The SessionGuard built here fixes the generation token for the life of the
    process; every session from a previous process is rejected with
    server_restart on its next request.
    """
    settings = get_settings()
    logger.info("Hive panel gateway starting up")

    app.state.user_store = UserStore(settings.database_url)
    app.state.session_store = SessionStore(settings.database_url, ttl_seconds=settings.session_inactivity_seconds)
    app.state.attempt_tracker = AttemptTracker(
        LockoutPolicy(settings.lockout_tiers),
        retention_seconds=settings.attempt_retention_seconds,
    )
    app.state.session_guard = SessionGuard(settings.session_inactivity_seconds)
    app.state.field_cipher = FieldCipher(settings.encryption_key)

    ensure_default_admin(app.state.user_store)
    logger.info(
        "Auth initialized (inactivity_timeout=%ss, lockout_tiers=%s, field_encryption=%s)",
        settings.session_inactivity_seconds,
        settings.lockout_tiers,
        "enabled" if app.state.field_cipher.is_configured() else "DISABLED",
    )
    if settings.force_disable_permissions:
        logger.warning("FORCE_DISABLE_PERMISSIONS is set -- every permission check will pass")

    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.attempt_sweep_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    app.state.session_store.close()
    app.state.user_store.close()
    logger.info("Hive panel gateway shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Hive Panel API",
    description="Authentication and authorization gateway for the Hive admin panel.",
    version=__version__,
    lifespan=lifespan,
    # Auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Error envelope for auth-core exceptions
#
# Shared by the exception handler and the session middleware -- exceptions
# raised inside HTTP middleware never reach exception handlers, so the
# middleware builds its 401 through the same function.
# ---------------------------------------------------------------------------

_AUTH_ERROR_STATUS: tuple[tuple[type[AuthError], int], ...] = (
    (AuthenticationExpired, 401),
    (NotAuthenticated, 401),
    (PermissionDenied, 403),
    (LockedOut, 429),
    (EncryptionMisconfigured, 500),
    (DecryptionFailed, 500),
)


def auth_error_response(exc: AuthError) -> JSONResponse:
    status_code = next((code for cls, code in _AUTH_ERROR_STATUS if isinstance(exc, cls)), 400)
    reason = exc.reason.value if isinstance(exc, AuthenticationExpired) else None
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, reason=reason)).model_dump(
            exclude_none=True
        ),
    )
    if isinstance(exc, LockedOut):
        response.headers["Retry-After"] = str(exc.retry_after)
        response.headers["Cache-Control"] = "no-store"
    return response


# ---------------------------------------------------------------------------
# Session validation middleware
#
# Runs on every non-exempt request. Outcomes:
#   no cookie / unknown id   -> pass through, request.state.session = None
#   guard says expired       -> delete record + cookie, 401 with reason
#   guard says continue      -> persist renewed last_activity, pass through
#
# Registered below TrustedHost/CORS, so a request with an untrusted Host is
# rejected before any session store read.
# ---------------------------------------------------------------------------


async def session_validation(request: Request, call_next):
    request.state.session = None
    guard: SessionGuard = request.app.state.session_guard
    if guard.is_exempt(request.url.path):
        return await call_next(request)

    raw_id = read_session_cookie(request)
    if not raw_id:
        return await call_next(request)

    store: SessionStore = request.app.state.session_store
    key = hash_session_id(raw_id)
    state = await run_in_threadpool(store.get, key)
    reason = guard.validate(state)
    if reason is not None:
        await run_in_threadpool(store.delete, key)
        response = auth_error_response(AuthenticationExpired(reason))
        clear_session_cookie(response)
        return response

    if state is not None:
        await run_in_threadpool(store.save, key, state)
        request.state.session = state
    return await call_next(request)


# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() prepends, so the last registration is the outermost layer.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(BaseHTTPMiddleware, dispatch=session_validation)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware (outermost)
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(account_router, prefix="/api/v1", tags=["Account"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(session: SessionState = Depends(get_current_session)):
    """Swagger UI -- requires a session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Hive Panel API")


@app.get("/redoc", include_in_schema=False)
async def redoc(session: SessionState = Depends(get_current_session)):
    """ReDoc UI -- requires a session."""
    return get_redoc_html(openapi_url="/openapi.json", title="Hive Panel API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return auth_error_response(exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    logger.warning(
        "Rate limit exceeded path=%s ip=%s",
        request.url.path,
        request.client.host if request.client else "unknown",
    )
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(exclude_none=True),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors (store outages included).

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# Exempt from session validation and not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=__version__)
