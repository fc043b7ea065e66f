"""
auth/tokens.py -- Password hashing, session ids, and admin bootstrap.

Security design decisions:
  Passwords: bcrypt, used directly. Bcrypt is the right choice for
       low-entropy secrets (passwords) because its cost factor makes brute-force
       expensive. The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether a username
       exists [C1].

  Session ids: secrets.token_urlsafe(32) gives 256 bits of entropy. The cookie
       carries the raw id; the session store is keyed by
       HMAC-SHA256(SECRET_KEY, raw_id). A leaked sessions table therefore
       yields no usable cookies, and rotating SECRET_KEY orphans every stored
       session in addition to the generation-token check.

  Bootstrap: on an empty user store, ensure_default_admin() creates one
       superadmin with a random password and logs it once. The operator is
       expected to change it on first login.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup [M6].

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import string
from typing import TYPE_CHECKING

import bcrypt

from auth.models import AccountRole, Principal
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("hive.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps password length (Pydantic field), which keeps inputs well
    below the truncation threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash raises ValueError inside bcrypt; that is a
    mismatch, not an outage.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("hive_timing_dummy")


# ---------------------------------------------------------------------------
# Principal authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, username: str, password: str) -> Principal | None:
    """Verify a username/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the Principal on success, None on any credential failure. Store
    errors propagate -- the login route turns them into a 500.
    """
    principal = store.get_by_username(username)
    if principal is None or principal.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, principal.hashed_password):
        return None
    if not principal.is_active:
        return None
    return principal


# ---------------------------------------------------------------------------
# Session ids
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


def hash_session_id(raw_id: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_id) as hex -- the session store key."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_id.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, raw_id: str) -> None:
    """Write the session id as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).

    No max_age: a browser-session cookie. Expiry is enforced server-side by
    the session guard so the client always learns *why* it was logged out.
    """
    response.set_cookie(
        _settings.session_cookie_name,
        value=raw_id,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(_settings.session_cookie_name)


def read_session_cookie(request) -> str | None:
    """Return the raw session id from the request cookie, or None."""
    return request.cookies.get(_settings.session_cookie_name) or None


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

_PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*()_+-="


def generate_secure_password(length: int = 20) -> str:
    """Random password with at least one lower, upper, digit and symbol."""
    while True:
        candidate = "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))
        if (
            any(c.islower() for c in candidate)
            and any(c.isupper() for c in candidate)
            and any(c.isdigit() for c in candidate)
            and any(c in "!@#$%^&*()_+-=" for c in candidate)
        ):
            return candidate


def ensure_default_admin(store: UserStore, username: str | None = None) -> str | None:
    """Create the bootstrap superadmin if the store has no users.

    Returns the generated password when an account was created, else None.
    """
    if store.has_users():
        return None
    username = username or _settings.default_admin_username
    password = generate_secure_password()
    store.create_user(
        Principal(
            username=username,
            role=AccountRole.SUPERADMIN,
            hashed_password=hash_password(password),
        )
    )
    logger.warning(
        "Created default superadmin '%s' with password: %s -- change it after first login.",
        username,
        password,
    )
    return password
