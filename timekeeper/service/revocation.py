from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Protocol, Tuple

from timekeeper.logging import get_logger
from timekeeper.storage.models import ActiveSession
from timekeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class SessionLookup(Protocol):
    def get_session_by_access_jti(self, jti: str) -> Optional[ActiveSession]: ...


class RevocationCache:
    """Fast "is this token still active" index in front of the session table.

    The cache is optional. Every read that misses, or that fails because Redis
    is unreachable, is answered from the store, so the cache only ever saves a
    query and never decides liveness on its own.
    """

    def __init__(
        self,
        store: SessionLookup,
        cache: Optional[RedisCache],
        *,
        access_ttl: timedelta,
    ) -> None:
        self.store = store
        self.cache = cache
        self.access_ttl = access_ttl

    def access_expires_at(self, session: ActiveSession) -> datetime:
        # Each session row is created together with exactly one access token
        return session.created_at + self.access_ttl

    @staticmethod
    def _seconds_left(until: datetime, now: datetime) -> int:
        return int((until - now).total_seconds())

    def _entries(
        self, sessions: Iterable[ActiveSession], active: bool, now: datetime
    ) -> List[Tuple[str, str, bool, int]]:
        entries: List[Tuple[str, str, bool, int]] = []
        for session in sessions:
            entries.append(
                (
                    ACCESS,
                    session.access_jti,
                    active,
                    self._seconds_left(self.access_expires_at(session), now),
                )
            )
            entries.append(
                (
                    REFRESH,
                    session.refresh_token_id,
                    active,
                    self._seconds_left(session.expires_at, now),
                )
            )
        return entries

    async def _write(self, entries: List[Tuple[str, str, bool, int]], event: str) -> None:
        if self.cache is None or not entries:
            return
        try:
            await self.cache.set_token_states(entries)
        except Exception as exc:
            logger.warning(
                event,
                count=len(entries),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def mark_active(self, session: ActiveSession, now: datetime) -> None:
        await self._write(self._entries([session], True, now), "revocation_cache_write_failed")

    async def mark_revoked(self, sessions: Iterable[ActiveSession], now: datetime) -> None:
        await self._write(self._entries(sessions, False, now), "revocation_cache_write_failed")

    async def _cached_state(self, kind: str, token_id: str) -> Optional[bool]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get_token_state(kind, token_id)
        except Exception as exc:
            logger.warning(
                "revocation_cache_read_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def is_access_active(self, jti: str, now: datetime) -> bool:
        cached = await self._cached_state(ACCESS, jti)
        if cached is not None:
            return cached
        session = self.store.get_session_by_access_jti(jti)
        active = session is not None and session.expires_at > now
        if active:
            # Rebuild the entry so the next request skips the store
            await self._write(
                [
                    (
                        ACCESS,
                        jti,
                        True,
                        self._seconds_left(self.access_expires_at(session), now),
                    )
                ],
                "revocation_cache_backfill_failed",
            )
        return active
