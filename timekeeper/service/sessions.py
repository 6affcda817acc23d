from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from timekeeper.logging import get_logger
from timekeeper.service.revocation import RevocationCache
from timekeeper.storage.models import ActiveSession

logger = get_logger(__name__)


class SessionStore(Protocol):
    def get_session(self, session_id: str) -> Optional[ActiveSession]: ...

    def list_sessions_for_user(self, user_id: str) -> List[ActiveSession]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def revoke_session(self, session_id: str, now: datetime) -> Optional[ActiveSession]: ...

    def revoke_session_by_refresh_token_id(
        self, refresh_token_id: str, now: datetime
    ) -> Optional[ActiveSession]: ...

    def revoke_user_sessions(self, user_id: str, now: datetime) -> List[ActiveSession]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


class SessionRegistry:
    """Durable session bookkeeping; every removal is mirrored into the revocation cache."""

    def __init__(self, store: SessionStore, revocation: RevocationCache) -> None:
        self.store = store
        self.revocation = revocation

    def get(self, session_id: str) -> Optional[ActiveSession]:
        return self.store.get_session(session_id)

    def list_for_user(self, user_id: str) -> List[ActiveSession]:
        return self.store.list_sessions_for_user(user_id)

    def touch(self, session_id: str, now: datetime) -> None:
        try:
            self.store.touch_session(session_id, now)
        except Exception as exc:
            logger.warning(
                "session_touch_failed",
                session_id=session_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def revoke(self, session_id: str, now: datetime) -> Optional[ActiveSession]:
        removed = self.store.revoke_session(session_id, now)
        if removed:
            await self.revocation.mark_revoked([removed], now)
            logger.info("session_revoked", session_id=session_id, user_id=removed.user_id)
        return removed

    async def revoke_by_refresh_token_id(
        self, refresh_token_id: str, now: datetime
    ) -> Optional[ActiveSession]:
        removed = self.store.revoke_session_by_refresh_token_id(refresh_token_id, now)
        if removed:
            await self.revocation.mark_revoked([removed], now)
            logger.info("session_revoked", session_id=removed.id, user_id=removed.user_id)
        return removed

    async def revoke_all_for_user(self, user_id: str, now: datetime) -> int:
        removed = self.store.revoke_user_sessions(user_id, now)
        await self.revocation.mark_revoked(removed, now)
        logger.info("user_sessions_revoked", user_id=user_id, count=len(removed))
        return len(removed)

    def delete_expired(self, now: datetime) -> int:
        return self.store.delete_expired_sessions(now)
