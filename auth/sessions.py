"""
auth/sessions.py -- Session lifecycle validation.

State machine per session:

    Unauthenticated --login--> Active --(token mismatch)------> Expired-Restart
                                  |
                                  +----(idle > timeout)-------> Expired-Inactivity
                                  |
                                  +----(request in window)----> Active (last_activity = now)

Both expired states are terminal: the caller destroys the stored session and
answers 401 with the ExpiryReason as a machine-readable reason code.

Generation token: fixed once when the guard is constructed, i.e. once per
process. Every session records the token it was created under. After a
restart or redeploy the new guard has a new token, so every older session is
void regardless of how recently it was used. The restart check runs first.

Inactivity: a sliding window measured from last_activity, independent of
absolute session age. Each accepted request advances last_activity.
Concurrent requests on the same session write last_activity last-writer-wins;
the value only moves forward so the race is harmless.

Layer rule: no imports from api/ or core/. The guard never touches storage;
the request pipeline loads and saves SessionState around validate().
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from collections.abc import Callable, Iterable

from auth.errors import ExpiryReason
from auth.models import Principal, SessionState

logger = logging.getLogger("hive.security")

Clock = Callable[[], float]

DEFAULT_PUBLIC_PATHS: frozenset[str] = frozenset({"/api/v1/auth/login", "/api/v1/health"})
_STATIC_ASSET_RE = re.compile(r"\.(html|css|js|png|jpg|jpeg|gif|ico|svg)$")


def generate_generation_token(clock: Clock = time.time) -> str:
    """Return a fresh process generation token ("gen_<ms>_<128-bit hex>")."""
    return f"gen_{int(clock() * 1000)}_{secrets.token_hex(16)}"


class SessionGuard:
    """Validates sessions against the process generation token and inactivity.

    Construct exactly one per process (the application lifespan does). Tests
    build their own with an injected clock and a fixed token.
    """

    def __init__(
        self,
        inactivity_timeout: float,
        *,
        clock: Clock = time.time,
        generation_token: str | None = None,
        public_paths: Iterable[str] = DEFAULT_PUBLIC_PATHS,
    ) -> None:
        if inactivity_timeout <= 0:
            raise ValueError("inactivity_timeout must be positive")
        self.inactivity_timeout = inactivity_timeout
        self._clock = clock
        self.generation_token = generation_token or generate_generation_token(clock)
        self.public_paths = frozenset(public_paths)

    def is_exempt(self, path: str) -> bool:
        """Public endpoints and static assets skip validation entirely."""
        return path in self.public_paths or bool(_STATIC_ASSET_RE.search(path))

    def initialize_session(self, principal: Principal, permissions: Iterable[str] = ()) -> SessionState:
        """Build the session for a principal that has just authenticated."""
        now = self._clock()
        return SessionState(
            user_id=principal.id,
            username=principal.username,
            role=principal.role,
            login_time=now,
            last_activity=now,
            generation_token=self.generation_token,
            permissions=sorted(permissions),
        )

    def validate(self, state: SessionState | None) -> ExpiryReason | None:
        """Check one request's session. None means continue.

        An absent session passes through untouched -- route guards decide what
        unauthenticated callers may do. On success last_activity is advanced
        in place and the caller must persist it.
        """
        if state is None:
            return None

        if state.generation_token != self.generation_token:
            logger.info(
                "Session invalid due to server restart user_id=%s username=%s",
                state.user_id,
                state.username,
            )
            return ExpiryReason.SERVER_RESTART

        now = self._clock()
        inactive = now - state.last_activity
        if inactive > self.inactivity_timeout:
            logger.info(
                "Session expired due to inactivity user_id=%s username=%s inactive=%ds",
                state.user_id,
                state.username,
                round(inactive),
            )
            return ExpiryReason.INACTIVITY_TIMEOUT

        state.last_activity = now
        return None
