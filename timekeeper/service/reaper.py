from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Protocol

from timekeeper.logging import get_logger
from timekeeper.storage.models import utcnow

logger = get_logger(__name__)

REAPED_TABLES = ("active_session", "refresh_token", "password_reset_token", "rate_limit_counter")


class ReapableStore(Protocol):
    def delete_expired_sessions(self, now: datetime) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...

    def delete_expired_password_resets(self, now: datetime) -> int: ...

    def delete_expired_rate_limits(self, now: datetime) -> int: ...

    def vacuum(self, tables: Iterable[str]) -> List[str]: ...


@dataclass
class ReapReport:
    sessions: int = 0
    refresh_tokens: int = 0
    password_resets: int = 0
    rate_limit_counters: int = 0

    @property
    def total(self) -> int:
        return self.sessions + self.refresh_tokens + self.password_resets + self.rate_limit_counters

    def as_dict(self) -> dict:
        return {**asdict(self), "total": self.total}


class ExpiryReaper:
    """Deletes rows whose contractual lifetime has passed. Safe to run repeatedly."""

    def __init__(self, store: ReapableStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def run(self) -> ReapReport:
        now = self._clock()
        # Sessions first so their refresh tokens are no longer referenced
        report = ReapReport(
            sessions=self.store.delete_expired_sessions(now),
            refresh_tokens=self.store.delete_expired_refresh_tokens(now),
            password_resets=self.store.delete_expired_password_resets(now),
            rate_limit_counters=self.store.delete_expired_rate_limits(now),
        )
        logger.info("expiry_reaper_completed", **report.as_dict())
        return report

    def compact(self) -> List[str]:
        vacuumed = self.store.vacuum(REAPED_TABLES)
        logger.info("storage_compacted", tables=vacuumed)
        return vacuumed
