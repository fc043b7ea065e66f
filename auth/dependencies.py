"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

The session validation middleware (api/main.py) runs before any route. By the
time these helpers execute, request.state.session is either a validated,
freshly-renewed SessionState or None.

  get_optional_session()   -- the session or None. Never raises.
  get_current_session()    -- raises NotAuthenticated (401) without a session.
  get_current_principal()  -- reloads the Principal from the store on every
                              request; a deleted or deactivated account stops
                              working immediately even with a live session.
  require_permission(*p)   -- dependency factory; grants when the principal
                              holds ANY of p. Raises PermissionDenied (403).

Permissions are resolved from the store per request, never from the
SessionState.permissions display cache.

Layer rule: no imports from api/. auth/dependencies.py may import from fastapi
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Request

from auth.errors import NotAuthenticated, PermissionDenied
from auth.models import Principal, SessionState
from auth.permissions import has_any_permission
from core.config import get_settings

logger = logging.getLogger("hive.security")


def get_optional_session(request: Request) -> SessionState | None:
    return getattr(request.state, "session", None)


def get_current_session(request: Request) -> SessionState:
    """Require a validated session. Raises NotAuthenticated (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: SessionState = Depends(get_current_session)): ...
    """
    session = get_optional_session(request)
    if session is None:
        logger.warning(
            "Unauthorized access attempt - no session ip=%s path=%s",
            request.client.host if request.client else "unknown",
            request.url.path,
        )
        raise NotAuthenticated()
    return session


def get_current_principal(request: Request) -> Principal:
    """Require a session whose account still exists and is active."""
    session = get_current_session(request)
    principal = request.app.state.user_store.get_by_username(session.username)
    if principal is None or not principal.is_active:
        logger.warning(
            "Unauthorized access attempt - account unavailable username=%s path=%s",
            session.username,
            request.url.path,
        )
        raise NotAuthenticated("Account not found.")
    return principal


def require_permission(*permissions: str) -> Callable[[Request], Principal]:
    """Build a dependency that admits principals holding any of `permissions`.

    Use as a FastAPI dependency:
        @router.get("/admin/accounts")
        def route(principal: Principal = Depends(require_permission("manage_accounts", "view_accounts"))): ...

    On denial the audit log records the path, the required permissions and
    the principal's direct grants and role ids. The response carries none of
    them.
    """
    required = tuple(permissions)
    if not required:
        raise ValueError("require_permission() needs at least one permission")

    def dependency(request: Request) -> Principal:
        principal = get_current_principal(request)

        if get_settings().force_disable_permissions:
            logger.warning(
                "Permissions system DISABLED via FORCE_DISABLE_PERMISSIONS username=%s path=%s",
                principal.username,
                request.url.path,
            )
            return principal

        role_lookup = request.app.state.user_store.get_role_permissions
        if has_any_permission(principal, required, role_lookup):
            return principal

        logger.warning(
            "Permission denied ip=%s username=%s path=%s required=%s permissions=%s roles=%s",
            request.client.host if request.client else "unknown",
            principal.username,
            request.url.path,
            list(required),
            sorted(principal.permissions),
            sorted(principal.role_ids),
        )
        raise PermissionDenied()

    return dependency
