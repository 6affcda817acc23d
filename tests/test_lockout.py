from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from timekeeper.service.errors import AccountLockedError
from timekeeper.service.lockout import (
    LockoutPolicy,
    LockoutTracker,
    register_failure,
    register_success,
)
from timekeeper.storage.memory import MemoryStore
from timekeeper.storage.models import LockoutState

from conftest import RecordingAuditSink

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestLockoutPolicy:
    def test_backoff_doubles_per_level(self):
        policy = LockoutPolicy(base_duration=timedelta(minutes=15))
        assert policy.duration_for_level(1) == timedelta(minutes=15)
        assert policy.duration_for_level(2) == timedelta(minutes=30)
        assert policy.duration_for_level(3) == timedelta(minutes=60)

    def test_backoff_is_capped(self):
        policy = LockoutPolicy(base_duration=timedelta(minutes=15), max_duration=timedelta(hours=2))
        assert policy.duration_for_level(10) == timedelta(hours=2)
        assert policy.duration_for_level(10_000) == timedelta(hours=2)

    def test_backoff_disabled_uses_base_duration(self):
        policy = LockoutPolicy(backoff_enabled=False)
        assert policy.duration_for_level(5) == policy.base_duration

    def test_durations_never_decrease(self):
        policy = LockoutPolicy(max_duration=timedelta(hours=24))
        durations = [policy.duration_for_level(level) for level in range(1, 30)]
        assert durations == sorted(durations)


class TestTransitions:
    def test_counter_increments_below_threshold(self):
        state = register_failure(LockoutState(user_id="u"), NOW, LockoutPolicy(threshold=3))
        assert state.failed_attempts == 1
        assert state.locked_until is None

    def test_reaching_threshold_locks_and_raises_level(self):
        policy = LockoutPolicy(threshold=2)
        state = LockoutState(user_id="u")
        for _ in range(2):
            state = register_failure(state, NOW, policy)
        assert state.is_locked(NOW)
        assert state.lockout_level == 1
        assert state.failed_attempts == 0
        assert state.locked_until == NOW + policy.base_duration

    def test_failures_while_locked_are_ignored(self):
        locked = LockoutState(user_id="u", locked_until=NOW + timedelta(minutes=5), lockout_level=1)
        assert register_failure(locked, NOW, LockoutPolicy()) == locked

    def test_success_resets_everything(self):
        state = LockoutState(
            user_id="u", failed_attempts=3, lockout_level=2, locked_until=NOW, last_failure_at=NOW
        )
        assert register_success(state) == LockoutState(user_id="u")


class TestLockoutTracker:
    def _tracker(self, threshold=5, audit=None):
        store = MemoryStore()
        return store, LockoutTracker(store, LockoutPolicy(threshold=threshold), audit=audit)

    def test_locked_account_is_rejected_with_unlock_time(self):
        store, tracker = self._tracker(threshold=1)
        tracker.record_failure("u", NOW)
        with pytest.raises(AccountLockedError) as exc_info:
            tracker.ensure_not_locked("u", NOW)
        assert exc_info.value.status_code == 423
        assert exc_info.value.detail["locked_until"] == (NOW + timedelta(minutes=15)).isoformat()

    def test_lock_expires_lazily(self):
        store, tracker = self._tracker(threshold=1)
        tracker.record_failure("u", NOW)
        tracker.ensure_not_locked("u", NOW + timedelta(minutes=15, seconds=1))

    def test_level_grows_across_cycles_until_success(self):
        store, tracker = self._tracker(threshold=1)
        now = NOW
        levels = []
        for _ in range(3):
            state = tracker.record_failure("u", now)
            levels.append(state.lockout_level)
            now = state.locked_until + timedelta(seconds=1)
        assert levels == [1, 2, 3]
        tracker.record_success("u")
        assert store.get_lockout_state("u").lockout_level == 0

    def test_concurrent_failures_are_all_counted(self):
        store, tracker = self._tracker(threshold=1000)
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: tracker.record_failure("u", NOW), range(200)))
        assert store.get_lockout_state("u").failed_attempts == 200

    def test_lockout_is_audited_once_per_trigger(self):
        audit = RecordingAuditSink()
        store, tracker = self._tracker(threshold=2, audit=audit)
        tracker.record_failure("u", NOW)
        tracker.record_failure("u", NOW)
        tracker.record_failure("u", NOW)
        assert [event for event, _, _ in audit.events] == ["account_locked"]

    def test_audit_failure_does_not_block_locking(self):
        store, tracker = self._tracker(threshold=1, audit=RecordingAuditSink(fail=True))
        state = tracker.record_failure("u", NOW)
        assert state.is_locked(NOW)

    def test_unlock_clears_state(self):
        store, tracker = self._tracker(threshold=1)
        tracker.record_failure("u", NOW)
        tracker.unlock("u")
        tracker.ensure_not_locked("u", NOW)
