from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis

from timekeeper.storage.models import RateLimitWindow

ACTIVE = "1"
INACTIVE = "0"


class RedisCache:
    """Thin Redis wrapper for token liveness markers and fixed-window counters."""

    # Check every window first, then count the request in all of them.
    # Returns the 1-based index of the first full window, or 0 when counted.
    _FIXED_WINDOW_SCRIPT = """
local n = #KEYS
for i = 1, n do
  local current = tonumber(redis.call('GET', KEYS[i]) or '0')
  if current >= tonumber(ARGV[i]) then
    return i
  end
end
for i = 1, n do
  local count = redis.call('INCR', KEYS[i])
  if count == 1 then
    redis.call('EXPIRE', KEYS[i], tonumber(ARGV[n + i]))
  end
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        max_connections: int = 10,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            max_connections=max_connections,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 so Redis accepts it."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        return max(1, int((expires_at - current).total_seconds()))

    @staticmethod
    def _token_key(kind: str, token_id: str) -> str:
        return f"auth:{kind}:{token_id}"

    @staticmethod
    def _rate_key(window: RateLimitWindow) -> str:
        """Hash the subject so caller-supplied values cannot collide on delimiters."""

        digest = hashlib.sha256(window.key.encode()).hexdigest()
        return f"rate:{digest}:{int(window.window_start.timestamp())}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup event loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_token_states(
        self, entries: Iterable[Tuple[str, str, bool, int]]
    ) -> None:
        """Write ``(kind, token_id, active, ttl_seconds)`` markers in one round trip."""
        pipe = self.client.pipeline()
        queued = 0
        for kind, token_id, active, ttl_seconds in entries:
            if ttl_seconds <= 0:
                continue
            pipe.set(
                self._token_key(kind, token_id),
                ACTIVE if active else INACTIVE,
                ex=ttl_seconds,
            )
            queued += 1
        if queued:
            await pipe.execute()

    async def get_token_state(self, kind: str, token_id: str) -> Optional[bool]:
        value = await self.client.get(self._token_key(kind, token_id))
        if value is None:
            return None
        return value == ACTIVE

    async def hit_fixed_windows(
        self, windows: Sequence[RateLimitWindow], now: datetime
    ) -> Optional[RateLimitWindow]:
        if not windows:
            return None
        keys = [self._rate_key(w) for w in windows]
        args = [w.limit for w in windows] + [
            self._ttl_seconds(w.expires_at, now) for w in windows
        ]
        rejected = int(await self._fixed_window(keys=keys, args=args))
        if rejected:
            return windows[rejected - 1]
        return None

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
