from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from timekeeper.logging import fingerprint, get_logger
from timekeeper.service.errors import ResetTokenExpiredError, ResetTokenInvalidError
from timekeeper.service.lockout import LockoutTracker
from timekeeper.service.passwords import PasswordManager, generate_token, hash_token
from timekeeper.service.sessions import SessionRegistry
from timekeeper.storage.models import PasswordResetToken, User, new_id, utcnow

logger = get_logger(__name__)

RESET_ACKNOWLEDGEMENT = {
    "message": "If an account exists for that email, a password reset link has been sent."
}
# Anything shorter cannot be a token we issued
MIN_RESET_TOKEN_LENGTH = 32


class ResetStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_password_reset(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def get_password_reset_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def consume_password_reset(self, token_id: str, now: datetime) -> bool: ...


class ResetNotifier(Protocol):
    """Delivers the one-time token to the account owner (email, SMS, ...)."""

    def send_reset(self, user: User, token: str, expires_at: datetime) -> None: ...


class LoggingResetNotifier:
    """Placeholder delivery that records the request without the token itself."""

    def send_reset(self, user: User, token: str, expires_at: datetime) -> None:
        logger.info(
            "password_reset_delivery_skipped",
            user_id=user.id,
            expires_at=expires_at.isoformat(),
        )


class PasswordResetFlow:
    def __init__(
        self,
        store: ResetStore,
        passwords: PasswordManager,
        registry: SessionRegistry,
        lockout: LockoutTracker,
        notifier: ResetNotifier,
        *,
        ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.registry = registry
        self.lockout = lockout
        self.notifier = notifier
        self.ttl = ttl
        self._clock = clock

    def request(self, email: str) -> dict:
        """Start a reset; the answer is identical whether or not the email is known."""
        normalized = (email or "").strip()
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user is None or not user.is_active:
            logger.info("password_reset_requested_unknown", email_hash=fingerprint(normalized))
            return dict(RESET_ACKNOWLEDGEMENT)
        now = self._clock()
        token = generate_token()
        record = PasswordResetToken(
            id=new_id(),
            user_id=user.id,
            token_hash=hash_token(token),
            expires_at=now + self.ttl,
            created_at=now,
        )
        self.store.create_password_reset(record)
        try:
            self.notifier.send_reset(user, token, record.expires_at)
        except Exception as exc:
            logger.error(
                "password_reset_delivery_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        logger.info("password_reset_requested", user_id=user.id)
        return dict(RESET_ACKNOWLEDGEMENT)

    def _live_record(self, token: str, now: datetime) -> PasswordResetToken:
        if not token or len(token.strip()) < MIN_RESET_TOKEN_LENGTH:
            raise ResetTokenInvalidError("reset token is invalid")
        record = self.store.get_password_reset_by_hash(hash_token(token.strip()))
        if record is None or record.used_at is not None:
            raise ResetTokenInvalidError("reset token is invalid")
        if record.expires_at <= now:
            raise ResetTokenExpiredError("reset token has expired")
        return record

    async def consume(self, token: str, new_password: str) -> None:
        now = self._clock()
        record = self._live_record(token, now)
        # Policy errors must not burn the token
        self.passwords.validate_new_password(record.user_id, new_password)
        if not self.store.consume_password_reset(record.id, now):
            logger.warning("password_reset_token_race_lost", user_id=record.user_id)
            raise ResetTokenInvalidError("reset token is invalid")
        # A store failure past this point leaves the token spent and the old
        # password in place; the user recovers by requesting a new token.
        self.passwords.set_password(record.user_id, new_password, enforce_policy=False)
        revoked = await self.registry.revoke_all_for_user(record.user_id, now)
        self.lockout.unlock(record.user_id)
        logger.info("password_reset_completed", user_id=record.user_id, revoked_sessions=revoked)
