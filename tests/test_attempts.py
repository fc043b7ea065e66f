"""
tests/test_attempts.py -- Unit tests for auth/attempts.py (AttemptTracker, LockoutPolicy).

Covers:
  - Tier selection: last tier whose threshold <= count
  - Lock engages at the first threshold and expires after its duration
  - Ratchet: an expired lock keeps the count, the next failure relocks
  - reset_attempts() clears everything for one identifier only
  - sweep() drops records past retention, locked or not
  - Policy validation rejects empty and non-positive tables

All tests drive time through the clock fixture (conftest.py); nothing sleeps.
"""

from __future__ import annotations

import pytest

from auth.attempts import AttemptTracker, LockoutPolicy

TIERS = ((5, 300), (10, 900), (20, 3600))


@pytest.fixture
def tracker(clock) -> AttemptTracker:
    return AttemptTracker(LockoutPolicy(TIERS), clock=clock, retention_seconds=24 * 60 * 60)


class TestLockoutPolicy:
    def test_below_first_threshold_has_no_tier(self) -> None:
        policy = LockoutPolicy(TIERS)
        assert policy.tier_for(0) is None
        assert policy.tier_for(4) is None
        assert policy.lock_duration(4) is None

    def test_highest_tier_met_wins(self) -> None:
        policy = LockoutPolicy(TIERS)
        assert policy.lock_duration(5) == 300
        assert policy.lock_duration(9) == 300
        assert policy.lock_duration(10) == 900
        assert policy.lock_duration(20) == 3600
        assert policy.lock_duration(500) == 3600

    def test_tiers_are_sorted_on_construction(self) -> None:
        policy = LockoutPolicy([(10, 900), (5, 300)])
        assert [t.threshold for t in policy.tiers] == [5, 10]
        assert policy.first_threshold == 5

    def test_empty_policy_rejected(self) -> None:
        with pytest.raises(ValueError):
            LockoutPolicy([])

    @pytest.mark.parametrize("tiers", [[(0, 300)], [(5, 0)], [(-1, 60)]])
    def test_non_positive_values_rejected(self, tiers) -> None:
        with pytest.raises(ValueError):
            LockoutPolicy(tiers)


class TestRecordFailedAttempt:
    def test_four_failures_do_not_lock(self, tracker: AttemptTracker) -> None:
        for _ in range(4):
            info = tracker.record_failed_attempt("alice")
        assert info.count == 4
        assert info.locked_until is None
        assert tracker.is_locked("alice").locked is False

    def test_fifth_failure_locks_for_first_tier(self, tracker: AttemptTracker, clock) -> None:
        """Scenario: alice fails five times at t0 -> locked until t0 + 300."""
        t0 = clock()
        for _ in range(5):
            info = tracker.record_failed_attempt("alice")
        assert info.count == 5
        assert info.locked_until == t0 + 300

        status = tracker.is_locked("alice")
        assert status.locked is True
        assert status.remaining_time == pytest.approx(300)

    def test_remaining_time_counts_down(self, tracker: AttemptTracker, clock) -> None:
        for _ in range(5):
            tracker.record_failed_attempt("alice")
        clock.advance(60)
        assert tracker.is_locked("alice").remaining_time == pytest.approx(240)

    def test_lock_expires_after_duration(self, tracker: AttemptTracker, clock) -> None:
        for _ in range(5):
            tracker.record_failed_attempt("alice")
        clock.advance(301)
        status = tracker.is_locked("alice")
        assert status.locked is False
        assert status.remaining_time is None

    def test_identifiers_are_independent(self, tracker: AttemptTracker) -> None:
        for _ in range(5):
            tracker.record_failed_attempt("alice")
        assert tracker.is_locked("bob").locked is False
        assert tracker.get_attempt_count("bob") == 0

    def test_tenth_failure_escalates(self, tracker: AttemptTracker, clock) -> None:
        for _ in range(9):
            tracker.record_failed_attempt("alice")
        info = tracker.record_failed_attempt("alice")
        assert info.count == 10
        assert info.locked_until == clock() + 900


class TestRatchet:
    def test_expired_lock_keeps_count(self, tracker: AttemptTracker, clock) -> None:
        for _ in range(5):
            tracker.record_failed_attempt("alice")
        clock.advance(301)
        assert tracker.is_locked("alice").locked is False
        assert tracker.get_attempt_count("alice") == 5

    def test_sixth_failure_after_expiry_relocks_immediately(self, tracker: AttemptTracker, clock) -> None:
        """Scenario: after the first lock expires, one more failure locks again for 300s."""
        for _ in range(5):
            tracker.record_failed_attempt("alice")
        clock.advance(301)
        assert tracker.is_locked("alice").locked is False

        info = tracker.record_failed_attempt("alice")
        assert info.count == 6
        assert info.locked_until == clock() + 300
        assert tracker.is_locked("alice").locked is True


class TestReset:
    def test_alice_full_cycle(self, tracker: AttemptTracker, clock) -> None:
        """Lock, shrinking remaining time, expiry, success, then a fresh count."""
        for _ in range(5):
            tracker.record_failed_attempt("alice")
        first = tracker.is_locked("alice").remaining_time
        clock.advance(100)
        second = tracker.is_locked("alice").remaining_time
        assert 0 < second < first

        clock.advance(201)
        assert tracker.is_locked("alice").locked is False

        tracker.reset_attempts("alice")
        assert tracker.record_failed_attempt("alice").count == 1

    def test_reset_clears_count_and_lock(self, tracker: AttemptTracker) -> None:
        for _ in range(7):
            tracker.record_failed_attempt("alice")
        tracker.reset_attempts("alice")
        assert tracker.get_attempt_count("alice") == 0
        assert tracker.is_locked("alice").locked is False
        assert len(tracker) == 0

    def test_reset_unknown_identifier_is_noop(self, tracker: AttemptTracker) -> None:
        tracker.reset_attempts("nobody")
        assert len(tracker) == 0

    def test_remaining_before_lock(self, tracker: AttemptTracker) -> None:
        assert tracker.remaining_before_lock(0) == 5
        assert tracker.remaining_before_lock(3) == 2
        assert tracker.remaining_before_lock(5) == 0
        assert tracker.remaining_before_lock(12) == 0


class TestSweep:
    def test_sweep_removes_records_past_retention(self, tracker: AttemptTracker, clock) -> None:
        tracker.record_failed_attempt("old")
        clock.advance(24 * 60 * 60 + 1)
        tracker.record_failed_attempt("fresh")

        assert tracker.sweep() == 1
        assert tracker.get_attempt_count("old") == 0
        assert tracker.get_attempt_count("fresh") == 1

    def test_sweep_ignores_lock_state(self, clock) -> None:
        """A record past retention goes even if its lock is still running."""
        tracker = AttemptTracker(LockoutPolicy([(1, 48 * 60 * 60)]), clock=clock, retention_seconds=60)
        tracker.record_failed_attempt("alice")
        clock.advance(61)
        assert tracker.is_locked("alice").locked is True

        assert tracker.sweep() == 1
        assert tracker.is_locked("alice").locked is False

    def test_sweep_keeps_recent_records(self, tracker: AttemptTracker, clock) -> None:
        tracker.record_failed_attempt("alice")
        clock.advance(60)
        assert tracker.sweep() == 0
        assert len(tracker) == 1
