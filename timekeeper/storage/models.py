from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    username: str
    email: Optional[str] = None
    role: str = "employee"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class UserMFAConfig:
    """TOTP enrollment for a user; ``enabled`` is False while pending confirmation."""

    user_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    enabled_at: Optional[datetime] = None


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now

    @classmethod
    def new(cls, user_id: str, token_hash: str, ttl: timedelta, *, now: datetime) -> "RefreshToken":
        return cls(
            id=new_id(),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + ttl,
            created_at=now,
        )


@dataclass
class ActiveSession:
    id: str
    user_id: str
    refresh_token_id: str
    access_jti: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    last_seen_at: Optional[datetime] = None
    device_label: Optional[str] = None
    ip_addr: Optional[str] = None

    def sort_key(self) -> tuple:
        """Most-recently-seen first; ties on creation time then id, all descending."""
        seen = self.last_seen_at or datetime.min.replace(tzinfo=timezone.utc)
        return (self.last_seen_at is not None, seen, self.created_at, self.id)


@dataclass
class LockoutState:
    user_id: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    lockout_level: int = 0
    last_failure_at: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now


@dataclass
class RateLimitCounter:
    key: str
    window_start: datetime
    count: int
    expires_at: datetime


@dataclass(frozen=True)
class RateLimitWindow:
    """One fixed window a request must fit into before it is counted."""

    key: str
    limit: int
    window_start: datetime
    expires_at: datetime
