"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore and SessionStore are the repositories; the _row_to_* functions are
the mappers. Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  users.email holds the Field Cipher blob. The store never sees plaintext
  email; encryption happens in the account routes before update_user().

  sessions.id is HMAC(SECRET_KEY, raw cookie value) -- see auth/tokens.py.

Failure policy:
  The store does not swallow errors. get_role_permissions() raising on an
  unreachable database is what keeps permission checks fail-closed.

DB path: auth/hive_auth.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import secrets
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine

from auth.models import AccountRole, Principal, Role, SessionState

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'hive_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("email", Text),  # Field Cipher blob, never plaintext
    Column("display_name", String(100)),
    Column("created_at", String(32), nullable=False),
    Column("created_by", String(255)),
    Column("updated_at", String(32)),
    Column("last_login", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_user_permissions = Table(
    "user_permissions",
    _metadata,
    Column("user_id", Integer, primary_key=True),
    Column("permission", String(100), primary_key=True),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, primary_key=True),
    Column("role_id", String(64), primary_key=True),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", Text),
    Column("created_at", String(32), nullable=False),
    Column("created_by", String(255)),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(64), primary_key=True),
    Column("permission", String(100), primary_key=True),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),  # HMAC-SHA256 hex of the cookie value
    Column("data", Text, nullable=False),  # SessionState JSON
    Column("expires_at", Float, nullable=False),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_role_id() -> str:
    return f"role-{secrets.token_hex(8)}"


# ---------------------------------------------------------------------------
# User / role repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Principal and Role entities.

    Usage:
        store = UserStore()
        store.create_user(Principal(username="admin", role=AccountRole.SUPERADMIN,
                                    hashed_password=hash_password("secret")))
        principal = store.get_by_username("admin")
        store.close()
    """

    # Columns update_user() may touch. Anything else is a programming error.
    _UPDATABLE_FIELDS: frozenset = frozenset(
        {"role", "is_active", "email", "display_name", "hashed_password", "username"}
    )

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = _make_engine(db_url)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).limit(1)).first()
        return row is not None

    def create_user(self, principal: Principal, created_by: str | None = None) -> int:
        """Insert a principal with its direct grants and role ids; return the new id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=principal.username,
                    hashed_password=principal.hashed_password,
                    role=principal.role.value,
                    email=principal.email,
                    display_name=principal.display_name,
                    created_at=_now_iso(),
                    created_by=created_by,
                    is_active=1 if principal.is_active else 0,
                )
            )
            user_id = result.inserted_primary_key[0]
            self._replace_user_permissions(conn, user_id, principal.permissions)
            self._replace_user_roles(conn, user_id, principal.role_ids)
        return user_id

    def get_by_username(self, username: str) -> Principal | None:
        """Look up a principal by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
            return self._load_principal(conn, row) if row is not None else None

    def get_by_id(self, user_id: int) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return self._load_principal(conn, row) if row is not None else None

    def list_users(self) -> list[Principal]:
        """Return all principals ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
            return [self._load_principal(conn, r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable columns on an existing user.

        Accepted fields: role, is_active, email, display_name, hashed_password,
        username. role may be an AccountRole; is_active must be a bool.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if isinstance(fields.get("role"), AccountRole):
            fields["role"] = fields["role"].value
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def set_user_permissions(self, user_id: int, permissions: Iterable[str]) -> None:
        with self.engine.begin() as conn:
            self._replace_user_permissions(conn, user_id, permissions)

    def set_user_roles(self, user_id: int, role_ids: Iterable[str]) -> None:
        with self.engine.begin() as conn:
            self._replace_user_roles(conn, user_id, role_ids)

    def update_last_login(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    def delete_user(self, user_id: int) -> bool:
        with self.engine.begin() as conn:
            conn.execute(_user_permissions.delete().where(_user_permissions.c.user_id == user_id))
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> str:
        """Insert a role and its permission set; return the role id.

        Raises sqlalchemy.exc.IntegrityError if the name is already taken.
        """
        role_id = role.id or generate_role_id()
        with self.engine.begin() as conn:
            conn.execute(
                _roles.insert().values(
                    id=role_id,
                    name=role.name,
                    description=role.description,
                    created_at=_now_iso(),
                    created_by=role.created_by,
                )
            )
            self._replace_role_permissions(conn, role_id, role.permissions)
        return role_id

    def get_role(self, role_id: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
            if row is None:
                return None
            return _row_to_role(row, self._role_permissions(conn, role_id))

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
            return [_row_to_role(r, self._role_permissions(conn, r.id)) for r in rows]

    def update_role(
        self,
        role_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        permissions: Iterable[str] | None = None,
    ) -> bool:
        """Rename and/or replace a role's permission set. False if the role does not exist."""
        with self.engine.begin() as conn:
            exists = conn.execute(select(_roles.c.id).where(_roles.c.id == role_id)).first()
            if exists is None:
                return False
            values = {}
            if name is not None:
                values["name"] = name
            if description is not None:
                values["description"] = description
            if values:
                conn.execute(_roles.update().where(_roles.c.id == role_id).values(**values))
            if permissions is not None:
                self._replace_role_permissions(conn, role_id, permissions)
        return True

    def count_role_holders(self, role_id: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(_user_roles).where(_user_roles.c.role_id == role_id)
            ).scalar_one()

    def delete_role(self, role_id: str) -> bool:
        """Delete a role and its permission set.

        Holders are not detached here; callers refuse while count_role_holders() > 0.
        """
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
        return result.rowcount > 0

    def get_role_permissions(self, role_id: str) -> frozenset[str]:
        """Permission set of one role; empty for an unknown id.

        This is the role_lookup effect handed to auth.permissions. It reads
        fresh on every call -- there is deliberately no cache in front of it.
        """
        with self.engine.connect() as conn:
            return self._role_permissions(conn, role_id)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_principal(self, conn: Connection, row) -> Principal:
        perms = conn.execute(
            select(_user_permissions.c.permission).where(_user_permissions.c.user_id == row.id)
        ).scalars()
        role_ids = conn.execute(select(_user_roles.c.role_id).where(_user_roles.c.user_id == row.id)).scalars()
        return _row_to_principal(row, frozenset(perms), frozenset(role_ids))

    @staticmethod
    def _role_permissions(conn: Connection, role_id: str) -> frozenset[str]:
        perms = conn.execute(
            select(_role_permissions.c.permission).where(_role_permissions.c.role_id == role_id)
        ).scalars()
        return frozenset(perms)

    @staticmethod
    def _replace_user_permissions(conn: Connection, user_id: int, permissions: Iterable[str]) -> None:
        conn.execute(_user_permissions.delete().where(_user_permissions.c.user_id == user_id))
        rows = [{"user_id": user_id, "permission": p} for p in sorted(set(permissions))]
        if rows:
            conn.execute(_user_permissions.insert(), rows)

    @staticmethod
    def _replace_user_roles(conn: Connection, user_id: int, role_ids: Iterable[str]) -> None:
        conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
        rows = [{"user_id": user_id, "role_id": r} for r in sorted(set(role_ids))]
        if rows:
            conn.execute(_user_roles.insert(), rows)

    @staticmethod
    def _replace_role_permissions(conn: Connection, role_id: str, permissions: Iterable[str]) -> None:
        conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
        rows = [{"role_id": role_id, "permission": p} for p in sorted(set(permissions))]
        if rows:
            conn.execute(_role_permissions.insert(), rows)


# ---------------------------------------------------------------------------
# Session repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Server-side session records keyed by hashed session id.

    ttl_seconds matches the inactivity timeout: every save() pushes
    expires_at to now + ttl. get() does NOT filter on expires_at -- a session
    that has gone idle must still load so the guard can report
    inactivity_timeout instead of the client silently appearing logged out.
    purge_expired() reclaims the rows on the periodic sweep.
    """

    def __init__(
        self,
        db_url: str = _DEFAULT_DB_URL,
        ttl_seconds: float = 600,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine: Engine = _make_engine(db_url)
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def get(self, session_key: str) -> SessionState | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_sessions.c.data).where(_sessions.c.id == session_key)).first()
        if row is None:
            return None
        return SessionState.from_dict(json.loads(row.data))

    def save(self, session_key: str, state: SessionState) -> None:
        """Insert or overwrite a session record (last writer wins)."""
        data = json.dumps(state.to_dict())
        expires_at = self._clock() + self.ttl_seconds
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update().where(_sessions.c.id == session_key).values(data=data, expires_at=expires_at)
            )
            if result.rowcount == 0:
                conn.execute(_sessions.insert().values(id=session_key, data=data, expires_at=expires_at))

    def delete(self, session_key: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_key))
        return result.rowcount > 0

    def purge_expired(self) -> int:
        """Remove records whose TTL has lapsed. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < self._clock()))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row, permissions: frozenset[str], role_ids: frozenset[str]) -> Principal:
    return Principal(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role=AccountRole(row.role),
        permissions=permissions,
        role_ids=role_ids,
        email=row.email,
        display_name=row.display_name,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )


def _row_to_role(row, permissions: frozenset[str]) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        permissions=permissions,
        description=row.description,
        created_at=row.created_at,
        created_by=row.created_by,
    )
