"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the Hive panel gateway happen here. No
module should call os.getenv() or os.environ.get() directly -- import
get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.
      List-valued fields (LOCKOUT_TIERS, ALLOWED_HOSTS) are parsed as JSON.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic: dev mode generates a key with warning, production mode refuses to
      start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Stored session
       ids are HMAC-SHA256(SECRET_KEY, raw_id) -- a short key weakens that.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  ENCRYPTION_KEY is deliberately NOT validated at startup. The field cipher
  reports itself unconfigured and write paths fail closed, so a panel without
  an encryption key still serves logins but refuses to store sensitive fields.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("hive.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'hive_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "hive.sid"
    # Sliding window: every authenticated request pushes expiry forward.
    session_inactivity_seconds: int = 600

    # ------------------------------------------------------------------
    # Brute-force protection
    # ------------------------------------------------------------------

    # (failure threshold, lockout seconds), ascending by threshold.
    lockout_tiers: list[tuple[int, int]] = [(5, 5 * 60), (10, 15 * 60), (20, 60 * 60)]
    attempt_retention_seconds: int = 24 * 60 * 60
    attempt_sweep_interval_seconds: int = 60 * 60
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Field encryption
    # ------------------------------------------------------------------

    encryption_key: str = ""

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    # Emergency switch -- every permission check passes. Logged per request.
    force_disable_permissions: bool = False
    default_admin_username: str = "admin"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("lockout_tiers")
    @classmethod
    def validate_lockout_tiers(cls, tiers: list[tuple[int, int]]) -> list[tuple[int, int]]:
        """Reject empty tables, non-positive values, and unordered thresholds.

        Tier selection picks the last tier whose threshold <= count, so the
        table must be strictly ascending for that rule to mean "highest tier".
        """
        if not tiers:
            raise ValueError("LOCKOUT_TIERS must contain at least one tier.")
        previous = 0
        for threshold, duration in tiers:
            if threshold <= 0 or duration <= 0:
                raise ValueError("LOCKOUT_TIERS thresholds and durations must be positive.")
            if threshold <= previous:
                raise ValueError("LOCKOUT_TIERS thresholds must be strictly increasing.")
            previous = threshold
        return tiers

    @field_validator("session_inactivity_seconds")
    @classmethod
    def validate_inactivity(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("SESSION_INACTIVITY_SECONDS must be positive.")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Stored session ids are keyed on it, so sessions will not survive
            a restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.encryption_key and len(self.encryption_key) < 32:
            logger.warning("ENCRYPTION_KEY is shorter than 32 characters -- field encryption is disabled.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
