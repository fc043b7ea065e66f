"""
auth/models.py -- Domain dataclasses for authentication and authorization entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the tracker, guard, resolver and stores do the work.

Principal and Role are frozen: permission resolution is a pure function over
them, so nothing downstream may mutate a grant set in place. SessionState and
AttemptRecord are mutable by design -- they are the state machines' state.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class AccountRole(str, Enum):
    """The enumerated account tier stored on every principal.

    Distinct from Role (below): AccountRole is a fixed tier, Role is an
    admin-defined bundle of permissions a principal may hold any number of.
    """

    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    USER = "user"


@dataclass(frozen=True)
class Principal:
    """An identity known to the panel, as loaded from the user store.

    permissions are direct grants; role_ids reference Role records whose
    permission sets are unioned in at resolution time (one level only).

    email holds the Field Cipher blob, never plaintext. None means no email on
    record.
    """

    username: str
    role: AccountRole = AccountRole.USER
    permissions: frozenset[str] = frozenset()
    role_ids: frozenset[str] = frozenset()
    id: int | None = None
    hashed_password: str | None = None
    email: str | None = None  # encrypted blob
    display_name: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class Role:
    """A named permission bundle. Roles never reference other roles.

    id is empty until the store assigns one ("role-<16 hex>").
    """

    name: str
    permissions: frozenset[str] = frozenset()
    id: str = ""
    description: str | None = None
    created_at: str | None = None
    created_by: str | None = None


@dataclass
class SessionState:
    """Server-side session record for one logged-in principal.

    permissions is a display cache captured at login (for /auth/status). It is
    never consulted for authorization -- guards re-resolve on every check.
    Timestamps are epoch seconds from the guard's clock.
    """

    user_id: int | None
    username: str
    role: AccountRole
    login_time: float
    last_activity: float
    generation_token: str
    permissions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "role": self.role.value,
            "login_time": self.login_time,
            "last_activity": self.last_activity,
            "generation_token": self.generation_token,
            "permissions": list(self.permissions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> SessionState:
        return cls(
            user_id=data.get("user_id"),
            username=data["username"],
            role=AccountRole(data["role"]),
            login_time=float(data["login_time"]),
            last_activity=float(data["last_activity"]),
            generation_token=data["generation_token"],
            permissions=list(data.get("permissions") or []),
        )


@dataclass
class AttemptRecord:
    """Failed-login bookkeeping for one identifier (usually the username).

    count only grows until reset_attempts() drops the whole record.
    locked_until is cleared when a lock expires naturally; count is not.
    """

    identifier: str
    count: int = 0
    first_failure: float = 0.0
    last_failure: float = 0.0
    locked_until: float | None = None


@dataclass(frozen=True)
class AttemptInfo:
    """Result of recording a failure."""

    count: int
    locked_until: float | None


@dataclass(frozen=True)
class LockStatus:
    """Result of a lock check. remaining_time is seconds, None when unlocked."""

    locked: bool
    remaining_time: float | None = None
