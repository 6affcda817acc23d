from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Sequence

from timekeeper.config import Settings
from timekeeper.logging import get_logger
from timekeeper.service.errors import RateLimitedError
from timekeeper.storage.models import RateLimitWindow
from timekeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    scope: str
    max_requests: int
    window_seconds: int

    def window_for(self, subject: str, now: datetime) -> RateLimitWindow:
        epoch = int(now.timestamp())
        start = epoch - (epoch % self.window_seconds)
        window_start = datetime.fromtimestamp(start, tz=timezone.utc)
        return RateLimitWindow(
            key=f"{self.scope}:{subject}",
            limit=self.max_requests,
            window_start=window_start,
            expires_at=window_start + timedelta(seconds=self.window_seconds),
        )


class CounterStore(Protocol):
    def hit_rate_limits(
        self, windows: Sequence[RateLimitWindow]
    ) -> Optional[RateLimitWindow]: ...


class RateLimiter:
    """Fixed-window limits per client IP and per user.

    Counters live in Redis when it is configured and reachable, otherwise in
    the durable store; both paths check every window before counting.
    """

    def __init__(
        self,
        store: CounterStore,
        cache: Optional[RedisCache],
        *,
        ip_rule: RateLimitRule,
        user_rule: RateLimitRule,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ip_rule = ip_rule
        self.user_rule = user_rule

    @classmethod
    def from_settings(
        cls, store: CounterStore, cache: Optional[RedisCache], settings: Settings
    ) -> "RateLimiter":
        return cls(
            store,
            cache,
            ip_rule=RateLimitRule(
                "ip", settings.rate_limit_ip_max_requests, settings.rate_limit_ip_window_seconds
            ),
            user_rule=RateLimitRule(
                "user",
                settings.rate_limit_user_max_requests,
                settings.rate_limit_user_window_seconds,
            ),
        )

    def windows_for(
        self, ip_addr: Optional[str], user_key: Optional[str], now: datetime
    ) -> List[RateLimitWindow]:
        windows: List[RateLimitWindow] = []
        if ip_addr:
            windows.append(self.ip_rule.window_for(ip_addr, now))
        if user_key:
            windows.append(self.user_rule.window_for(user_key.strip().lower(), now))
        return windows

    async def _hit(
        self, windows: Sequence[RateLimitWindow], now: datetime
    ) -> Optional[RateLimitWindow]:
        if self.cache is not None:
            try:
                return await self.cache.hit_fixed_windows(windows, now)
            except Exception as exc:
                logger.warning(
                    "rate_limit_cache_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return self.store.hit_rate_limits(windows)

    async def check(
        self, now: datetime, *, ip_addr: Optional[str] = None, user_key: Optional[str] = None
    ) -> None:
        windows = self.windows_for(ip_addr, user_key, now)
        if not windows:
            return
        rejected = await self._hit(windows, now)
        if rejected is None:
            return
        scope = rejected.key.split(":", 1)[0]
        retry_after = max(1, int((rejected.expires_at - now).total_seconds()))
        logger.warning("rate_limited", scope=scope, retry_after=retry_after)
        raise RateLimitedError(
            "too many requests, try again later",
            detail={"scope": scope, "retry_after": retry_after},
        )
