"""
auth/attempts.py -- Failed-login tracking with escalating lockouts.

Lockout policy is a data table of (threshold, duration) tiers. On every
failure the lock expiry is recomputed from the highest tier the new count
meets, so 5 failures -> tier 1, 10 -> tier 2, and so on.

Ratchet: when a lock expires on its own the count is kept. The next failure
after expiry therefore re-applies the same (or a longer) lock immediately
instead of granting a fresh grace period. Only a successful login
(reset_attempts) starts the identifier over at zero.

Callers gate on is_locked() before verifying credentials and only call
record_failed_attempt() when the gate was open -- attempts made while locked
are rejected without being recorded.

State lives in an AttemptTracker instance owned by the application lifespan,
not in a module global. The map is per process: a multi-instance deployment
either shares a store or accepts per-instance lockout scope.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from auth.models import AttemptInfo, AttemptRecord, LockStatus

logger = logging.getLogger("hive.security")

Clock = Callable[[], float]

DEFAULT_TIERS: tuple[tuple[int, int], ...] = ((5, 5 * 60), (10, 15 * 60), (20, 60 * 60))
DEFAULT_RETENTION_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class LockoutTier:
    threshold: int
    duration: float  # seconds


class LockoutPolicy:
    """Ordered lockout tiers, selected by "last tier whose threshold <= count"."""

    def __init__(self, tiers: Iterable[tuple[int, float]] = DEFAULT_TIERS) -> None:
        self.tiers: tuple[LockoutTier, ...] = tuple(
            sorted((LockoutTier(int(t), float(d)) for t, d in tiers), key=lambda tier: tier.threshold)
        )
        if not self.tiers:
            raise ValueError("LockoutPolicy needs at least one tier.")
        if any(tier.threshold <= 0 or tier.duration <= 0 for tier in self.tiers):
            raise ValueError("Lockout thresholds and durations must be positive.")

    def tier_for(self, count: int) -> LockoutTier | None:
        selected = None
        for tier in self.tiers:
            if tier.threshold <= count:
                selected = tier
            else:
                break
        return selected

    def lock_duration(self, count: int) -> float | None:
        tier = self.tier_for(count)
        return tier.duration if tier is not None else None

    @property
    def first_threshold(self) -> int:
        return self.tiers[0].threshold


class AttemptTracker:
    """Process-wide failed-attempt map with an injected clock.

    Usage:
        tracker = AttemptTracker(LockoutPolicy(settings.lockout_tiers))
        status = tracker.is_locked(username)
        if status.locked: ...reject...
        if ok: tracker.reset_attempts(username)
        else:  tracker.record_failed_attempt(username)

    Sync route handlers run in a thread pool, so every read-modify-write on
    the map holds self._lock.
    """

    def __init__(
        self,
        policy: LockoutPolicy | None = None,
        *,
        clock: Clock = time.time,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
    ) -> None:
        self.policy = policy or LockoutPolicy()
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._records: dict[str, AttemptRecord] = {}
        self._lock = threading.Lock()

    def record_failed_attempt(self, identifier: str) -> AttemptInfo:
        """Count a failure and (re)compute the lock from the highest tier met."""
        now = self._clock()
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                record = AttemptRecord(identifier=identifier, first_failure=now)
                self._records[identifier] = record
            record.count += 1
            record.last_failure = now
            duration = self.policy.lock_duration(record.count)
            if duration is not None:
                record.locked_until = now + duration
            info = AttemptInfo(count=record.count, locked_until=record.locked_until)

        logger.warning(
            "Failed login attempt recorded identifier=%s attempts=%d locked_until=%s",
            identifier,
            info.count,
            info.locked_until,
        )
        return info

    def is_locked(self, identifier: str) -> LockStatus:
        """Report whether identifier is locked and for how many more seconds.

        An expired lock is cleared here; the failure count survives.
        """
        now = self._clock()
        with self._lock:
            record = self._records.get(identifier)
            if record is None or record.locked_until is None:
                return LockStatus(locked=False)
            if now >= record.locked_until:
                record.locked_until = None
                return LockStatus(locked=False)
            return LockStatus(locked=True, remaining_time=record.locked_until - now)

    def reset_attempts(self, identifier: str) -> None:
        with self._lock:
            removed = self._records.pop(identifier, None)
        if removed is not None:
            logger.info("Login attempts reset identifier=%s", identifier)

    def get_attempt_count(self, identifier: str) -> int:
        with self._lock:
            record = self._records.get(identifier)
            return record.count if record is not None else 0

    def remaining_before_lock(self, count: int) -> int:
        """Failures left before the first tier engages (0 once it has)."""
        return max(0, self.policy.first_threshold - count)

    def sweep(self) -> int:
        """Drop records whose first failure is older than the retention ceiling.

        Lock state is ignored: a record past retention goes even if locked.
        Returns the number of records removed.
        """
        cutoff = self._clock() - self.retention_seconds
        with self._lock:
            stale = [key for key, rec in self._records.items() if rec.first_failure < cutoff]
            for key in stale:
                del self._records[key]
        if stale:
            logger.info("Cleaned up %d old login attempt entries", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
