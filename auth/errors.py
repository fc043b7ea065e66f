"""
auth/errors.py -- Domain exceptions raised by the auth core.

The core raises these; api/main.py maps each one onto an HTTP status and the
shared error envelope. Nothing in auth/ builds HTTP responses itself.

Every exception carries a stable machine-readable `code`. Messages are safe to
show to the client -- audit detail (grants, role ids) goes to the log only.
"""

from __future__ import annotations

import math
from enum import Enum


class ExpiryReason(str, Enum):
    """Why an existing session was destroyed by the session guard."""

    INACTIVITY_TIMEOUT = "inactivity_timeout"
    SERVER_RESTART = "server_restart"


class AuthError(Exception):
    """Base class for all auth-core failures."""

    code = "auth_error"
    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


class NotAuthenticated(AuthError):
    code = "unauthorized"
    message = "Authentication required."


class AuthenticationExpired(AuthError):
    """Session destroyed by inactivity timeout or a process restart."""

    code = "session_expired"

    def __init__(self, reason: ExpiryReason) -> None:
        self.reason = reason
        if reason is ExpiryReason.SERVER_RESTART:
            text = "Session expired due to server restart."
        else:
            text = "Session expired due to inactivity."
        super().__init__(text)


class PermissionDenied(AuthError):
    code = "forbidden"
    message = "You do not have permission to perform this action."


class LockedOut(AuthError):
    """Too many failed attempts for an identifier.

    The message depends only on the remaining time, never on whether the
    identifier names a real account.
    """

    code = "locked_out"

    def __init__(self, remaining_seconds: float) -> None:
        self.remaining_seconds = remaining_seconds
        minutes = max(1, math.ceil(remaining_seconds / 60))
        unit = "minute" if minutes == 1 else "minutes"
        super().__init__(f"Too many failed attempts. Try again in {minutes} {unit}.")

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.remaining_seconds))


class EncryptionMisconfigured(AuthError):
    code = "encryption_unavailable"
    message = "Field encryption is not configured."


class DecryptionFailed(AuthError):
    """Blob was malformed, tampered with, or encrypted under another key."""

    code = "decryption_failed"
    message = "Failed to decrypt data."
