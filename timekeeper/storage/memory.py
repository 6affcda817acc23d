from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from timekeeper.logging import get_logger
from timekeeper.storage.errors import ConstraintViolation
from timekeeper.storage.models import (
    ActiveSession,
    LockoutState,
    PasswordResetToken,
    RateLimitCounter,
    RateLimitWindow,
    RefreshToken,
    User,
    UserMFAConfig,
    new_id,
)


class MemoryStore:
    """In-process store for tests and single-node development.

    Every read-modify-write runs under one re-entrant lock, which gives the same
    "update only if still unused" guarantees the Postgres store gets from
    conditional UPDATE statements.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.password_history: Dict[str, List[str]] = {}
        self.mfa_secrets: Dict[str, UserMFAConfig] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.sessions: Dict[str, ActiveSession] = {}
        self.lockouts: Dict[str, LockoutState] = {}
        self.password_resets: Dict[str, PasswordResetToken] = {}
        self.rate_counters: Dict[Tuple[str, datetime], RateLimitCounter] = {}
        # RLock so helpers can be called from methods that already hold it
        self._data_lock = threading.RLock()

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        role: str = "employee",
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            lowered = username.lower()
            if any(existing.username.lower() == lowered for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email and any(
                (existing.email or "").lower() == email.lower()
                for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                username=username,
                email=email,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username.lower() == lowered), None
            )

    def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if (u.email or "").lower() == lowered),
                None,
            )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return user

    # -- credentials -----------------------------------------------------

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        history_limit: int = 0,
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            previous = self.credentials.get(user_id)
            self.credentials[user_id] = (password_hash, password_algo)
            if previous and history_limit > 0:
                history = self.password_history.setdefault(user_id, [])
                history.insert(0, previous[0])
                del history[history_limit:]

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def get_password_history(self, user_id: str, limit: int) -> List[str]:
        with self._data_lock:
            return list(self.password_history.get(user_id, [])[:limit])

    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            record = UserMFAConfig(user_id=user_id, secret=secret, enabled=False)
            self.mfa_secrets[user_id] = record
            if enabled:
                return self.enable_user_mfa(user_id, record.created_at) or record
            return replace(record)

    def enable_user_mfa(self, user_id: str, now: datetime) -> Optional[UserMFAConfig]:
        with self._data_lock:
            record = self.mfa_secrets.get(user_id)
            if not record:
                return None
            record.enabled = True
            record.enabled_at = now
            return replace(record)

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._data_lock:
            record = self.mfa_secrets.get(user_id)
            return replace(record) if record else None

    def clear_user_mfa_secret(self, user_id: str) -> bool:
        with self._data_lock:
            return self.mfa_secrets.pop(user_id, None) is not None

    # -- refresh tokens and sessions -------------------------------------

    def _invalidate_refresh_token(self, token_id: str, now: datetime) -> None:
        token = self.refresh_tokens.get(token_id)
        if token and token.used_at is None:
            token.used_at = now

    def _drop_session(self, session: ActiveSession, now: datetime) -> ActiveSession:
        self.sessions.pop(session.id, None)
        self._invalidate_refresh_token(session.refresh_token_id, now)
        return session

    def _ordered_sessions(self, user_id: str) -> List[ActiveSession]:
        owned = [s for s in self.sessions.values() if s.user_id == user_id]
        return sorted(owned, key=lambda s: s.sort_key(), reverse=True)

    def create_session_bundle(
        self,
        refresh_token: RefreshToken,
        session: ActiveSession,
        *,
        max_sessions: int,
        now: datetime,
    ) -> List[ActiveSession]:
        """Insert a refresh token and its session, evicting the least recently seen past the cap."""
        with self._data_lock:
            if refresh_token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": refresh_token.user_id})
            if any(s.refresh_token_id == refresh_token.id for s in self.sessions.values()):
                raise ConstraintViolation(
                    "session already exists for refresh token",
                    {"refresh_token_id": refresh_token.id},
                )
            evicted: List[ActiveSession] = []
            ordered = self._ordered_sessions(session.user_id)
            while len(ordered) >= max_sessions:
                evicted.append(self._drop_session(ordered.pop(), now))
            self.refresh_tokens[refresh_token.id] = replace(refresh_token)
            self.sessions[session.id] = replace(session)
            return evicted

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = next(
                (t for t in self.refresh_tokens.values() if t.token_hash == token_hash),
                None,
            )
            return replace(token) if token else None

    def rotate_refresh_token(
        self,
        old_token_id: str,
        *,
        now: datetime,
        new_refresh_token: RefreshToken,
        new_session: ActiveSession,
    ) -> Tuple[bool, Optional[ActiveSession]]:
        """Mark ``old_token_id`` used and swap in the new pair if it was still live.

        Returns ``(False, None)`` when another caller already consumed the token.
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_token_id)
            if not old or not old.is_live(now):
                return False, None
            old.used_at = now
            replaced = next(
                (s for s in self.sessions.values() if s.refresh_token_id == old_token_id),
                None,
            )
            if replaced:
                self.sessions.pop(replaced.id, None)
            self.refresh_tokens[new_refresh_token.id] = replace(new_refresh_token)
            self.sessions[new_session.id] = replace(new_session)
            return True, replaced

    def get_session(self, session_id: str) -> Optional[ActiveSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def get_session_by_access_jti(self, jti: str) -> Optional[ActiveSession]:
        with self._data_lock:
            session = next((s for s in self.sessions.values() if s.access_jti == jti), None)
            return replace(session) if session else None

    def list_sessions_for_user(self, user_id: str) -> List[ActiveSession]:
        with self._data_lock:
            return [replace(s) for s in self._ordered_sessions(user_id)]

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session:
                session.last_seen_at = now

    def revoke_session(self, session_id: str, now: datetime) -> Optional[ActiveSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            return replace(self._drop_session(session, now))

    def revoke_session_by_refresh_token_id(
        self, refresh_token_id: str, now: datetime
    ) -> Optional[ActiveSession]:
        with self._data_lock:
            session = next(
                (s for s in self.sessions.values() if s.refresh_token_id == refresh_token_id),
                None,
            )
            self._invalidate_refresh_token(refresh_token_id, now)
            if not session:
                return None
            return replace(self._drop_session(session, now))

    def revoke_user_sessions(self, user_id: str, now: datetime) -> List[ActiveSession]:
        with self._data_lock:
            revoked = [self._drop_session(s, now) for s in self._ordered_sessions(user_id)]
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and token.used_at is None:
                    token.used_at = now
            return [replace(s) for s in revoked]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            linked = {s.refresh_token_id for s in self.sessions.values()}
            stale = [
                tid
                for tid, t in self.refresh_tokens.items()
                if t.expires_at <= now and tid not in linked
            ]
            for tid in stale:
                self.refresh_tokens.pop(tid, None)
            return len(stale)

    # -- lockout ---------------------------------------------------------

    def get_lockout_state(self, user_id: str) -> LockoutState:
        with self._data_lock:
            state = self.lockouts.get(user_id)
            return replace(state) if state else LockoutState(user_id=user_id)

    def update_lockout_state(
        self, user_id: str, mutate: Callable[[LockoutState], LockoutState]
    ) -> Tuple[LockoutState, LockoutState]:
        with self._data_lock:
            before = self.get_lockout_state(user_id)
            after = mutate(replace(before))
            self.lockouts[user_id] = replace(after)
            return before, after

    # -- password reset --------------------------------------------------

    def create_password_reset(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if any(t.token_hash == token.token_hash for t in self.password_resets.values()):
                raise ConstraintViolation("reset token hash already exists")
            self.password_resets[token.id] = replace(token)
            return token

    def get_password_reset_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = next(
                (t for t in self.password_resets.values() if t.token_hash == token_hash),
                None,
            )
            return replace(token) if token else None

    def consume_password_reset(self, token_id: str, now: datetime) -> bool:
        with self._data_lock:
            token = self.password_resets.get(token_id)
            if not token or not token.is_live(now):
                return False
            token.used_at = now
            return True

    def delete_expired_password_resets(self, now: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.password_resets.items() if t.expires_at <= now]
            for tid in stale:
                self.password_resets.pop(tid, None)
            return len(stale)

    # -- rate limit counters ---------------------------------------------

    def hit_rate_limits(
        self, windows: Sequence[RateLimitWindow]
    ) -> Optional[RateLimitWindow]:
        """Count one request in every window unless any window is already full.

        Returns the first full window, or None when the request was counted.
        """
        with self._data_lock:
            for window in windows:
                counter = self.rate_counters.get((window.key, window.window_start))
                if counter and counter.count >= window.limit:
                    return window
            for window in windows:
                slot = (window.key, window.window_start)
                counter = self.rate_counters.get(slot)
                if counter:
                    counter.count += 1
                else:
                    self.rate_counters[slot] = RateLimitCounter(
                        key=window.key,
                        window_start=window.window_start,
                        count=1,
                        expires_at=window.expires_at,
                    )
            return None

    def delete_expired_rate_limits(self, now: datetime) -> int:
        with self._data_lock:
            stale = [slot for slot, c in self.rate_counters.items() if c.expires_at <= now]
            for slot in stale:
                self.rate_counters.pop(slot, None)
            return len(stale)

    def vacuum(self, tables: Iterable[str]) -> List[str]:
        """Nothing to reclaim in process memory."""
        return []
