from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Tuple

from timekeeper.config import Settings
from timekeeper.logging import get_logger
from timekeeper.service.audit import AuditSink, report
from timekeeper.service.errors import AccountLockedError
from timekeeper.storage.models import LockoutState

logger = get_logger(__name__)

# 2**20 base durations is already far beyond any sane cap
_MAX_BACKOFF_EXPONENT = 20


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    base_duration: timedelta = timedelta(minutes=15)
    backoff_enabled: bool = True
    max_duration: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            threshold=settings.account_lockout_threshold,
            base_duration=timedelta(minutes=settings.account_lockout_duration_minutes),
            backoff_enabled=settings.account_lockout_backoff_enabled,
            max_duration=timedelta(hours=settings.account_lockout_max_duration_hours),
        )

    def duration_for_level(self, level: int) -> timedelta:
        """Lock length for the ``level``-th lockout: base, 2x base, 4x base, ... up to the cap."""
        if not self.backoff_enabled:
            return self.base_duration
        exponent = min(max(level - 1, 0), _MAX_BACKOFF_EXPONENT)
        return min(self.base_duration * (2**exponent), self.max_duration)


def register_failure(state: LockoutState, now: datetime, policy: LockoutPolicy) -> LockoutState:
    """Next state after a failed attempt.

    A locked account is left untouched. Reaching the threshold resets the
    counter, raises the backoff level and sets ``locked_until``.
    """
    if state.is_locked(now):
        return state
    failed = state.failed_attempts + 1
    if failed < policy.threshold:
        return replace(state, failed_attempts=failed, last_failure_at=now)
    level = state.lockout_level + 1
    return replace(
        state,
        failed_attempts=0,
        lockout_level=level,
        locked_until=now + policy.duration_for_level(level),
        last_failure_at=now,
    )


def register_success(state: LockoutState) -> LockoutState:
    return LockoutState(user_id=state.user_id)


class LockoutStore(Protocol):
    def get_lockout_state(self, user_id: str) -> LockoutState: ...

    def update_lockout_state(
        self, user_id: str, mutate: Callable[[LockoutState], LockoutState]
    ) -> Tuple[LockoutState, LockoutState]: ...


class LockoutTracker:
    """Applies the lockout transitions through the store's atomic read-modify-write."""

    def __init__(
        self,
        store: LockoutStore,
        policy: LockoutPolicy,
        *,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.audit = audit

    def ensure_not_locked(self, user_id: str, now: datetime) -> LockoutState:
        state = self.store.get_lockout_state(user_id)
        if state.is_locked(now):
            raise AccountLockedError(
                "account is temporarily locked",
                detail={"locked_until": state.locked_until.isoformat()},
            )
        return state

    def record_failure(self, user_id: str, now: datetime) -> LockoutState:
        before, after = self.store.update_lockout_state(
            user_id, lambda state: register_failure(state, now, self.policy)
        )
        if after.is_locked(now) and not before.is_locked(now):
            logger.warning(
                "account_locked",
                user_id=user_id,
                lockout_level=after.lockout_level,
                locked_until=after.locked_until.isoformat(),
            )
            report(
                self.audit,
                "account_locked",
                user_id=user_id,
                lockout_level=after.lockout_level,
                locked_until=after.locked_until.isoformat(),
            )
        return after

    def record_success(self, user_id: str) -> None:
        state = self.store.get_lockout_state(user_id)
        if state.failed_attempts or state.lockout_level or state.locked_until:
            self.store.update_lockout_state(user_id, register_success)

    def unlock(self, user_id: str) -> None:
        self.store.update_lockout_state(user_id, register_success)
        logger.info("account_unlocked", user_id=user_id)
