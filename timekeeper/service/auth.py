from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol

from timekeeper.logging import fingerprint, get_logger
from timekeeper.service.audit import AuditSink
from timekeeper.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    MfaInvalidError,
    MfaRequiredError,
    NotFoundError,
    ValidationError,
    store_guarded,
    translate_store_errors,
)
from timekeeper.service.lockout import LockoutTracker
from timekeeper.service.mfa import MfaChallenge
from timekeeper.service.password_reset import PasswordResetFlow
from timekeeper.service.passwords import PasswordManager
from timekeeper.service.rate_limit import RateLimiter
from timekeeper.service.sessions import SessionRegistry
from timekeeper.service.tokens import AuthContext, IssuedTokens, TokenIssuer
from timekeeper.storage.errors import ConstraintViolation
from timekeeper.storage.models import ActiveSession, User, utcnow

USERNAME_MAX_LENGTH = 150


class UserStore(Protocol):
    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        role: str = "employee",
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...


class AuthService:
    """Entry point for every credential, token and session operation.

    Login runs rate limiting, lockout, password and MFA checks in that order
    before anything is issued. Failures never reveal whether the username
    exists.
    """

    def __init__(
        self,
        store: UserStore,
        *,
        passwords: PasswordManager,
        mfa: MfaChallenge,
        lockout: LockoutTracker,
        rate_limiter: RateLimiter,
        tokens: TokenIssuer,
        registry: SessionRegistry,
        resets: PasswordResetFlow,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.mfa = mfa
        self.lockout = lockout
        self.rate_limiter = rate_limiter
        self.tokens = tokens
        self.registry = registry
        self.resets = resets
        self.audit = audit
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    # -- accounts ----------------------------------------------------------

    def create_user(
        self,
        username: str,
        password: str,
        *,
        email: Optional[str] = None,
        role: str = "employee",
    ) -> User:
        username = (username or "").strip()
        if not username or len(username) > USERNAME_MAX_LENGTH:
            raise ValidationError("username is required", detail={"field": "username"})
        # Check the password before the row exists so a weak one leaves nothing behind
        self.passwords.validate_new_password(None, password)
        with translate_store_errors():
            try:
                user = self.store.create_user(username, email=email, role=role)
            except ConstraintViolation as exc:
                raise ConflictError("account already exists", detail=exc.detail) from exc
            self.passwords.set_password(user.id, password, enforce_policy=False)
        self.logger.info("user_created", user_id=user.id, role=role)
        return user

    @store_guarded
    async def login(
        self,
        username: str,
        password: str,
        mfa_code: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        device_label: Optional[str] = None,
    ) -> IssuedTokens:
        now = self._now()
        normalized = (username or "").strip()
        await self.rate_limiter.check(now, ip_addr=ip_addr, user_key=normalized or None)

        user = self.store.get_user_by_username(normalized) if normalized else None
        if user is None or not user.is_active:
            self.passwords.burn_verification(password or "")
            self.logger.info("login_failed", reason="unknown_user", username_hash=fingerprint(normalized))
            raise InvalidCredentialsError("invalid username or password")

        self.lockout.ensure_not_locked(user.id, now)

        if not self.passwords.verify_password(user.id, password or ""):
            self.lockout.record_failure(user.id, now)
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError("invalid username or password")

        mfa_cfg = self.mfa.enrolled_config(user.id)
        if mfa_cfg is not None:
            if not mfa_code:
                self.logger.info("login_mfa_required", user_id=user.id)
                raise MfaRequiredError("MFA code required")
            if not self.mfa.check(mfa_cfg, mfa_code):
                self.lockout.record_failure(user.id, now)
                self.logger.info("login_failed", reason="bad_mfa", user_id=user.id)
                raise MfaInvalidError("invalid MFA code")

        self.lockout.record_success(user.id)
        issued = await self.tokens.issue(user, device_label=device_label, ip_addr=ip_addr)
        self.logger.info("login_succeeded", user_id=user.id, session_id=issued.session.id)
        return issued

    @store_guarded
    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        device_label: Optional[str] = None,
    ) -> IssuedTokens:
        return await self.tokens.rotate(refresh_token, device_label=device_label, ip_addr=ip_addr)

    @store_guarded
    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        return await self.tokens.authenticate(access_token)

    # -- sessions ----------------------------------------------------------

    @store_guarded
    async def logout(
        self, ctx: Optional[AuthContext] = None, refresh_token: Optional[str] = None
    ) -> None:
        """Revoke the caller's session; either credential is enough to find it."""
        now = self._now()
        if ctx is not None:
            await self.registry.revoke(ctx.session_id, now)
        if refresh_token:
            await self.tokens.revoke_refresh_token(refresh_token)

    @store_guarded
    async def logout_all(self, ctx: AuthContext) -> int:
        return await self.registry.revoke_all_for_user(ctx.user_id, self._now())

    @store_guarded
    async def list_sessions(self, ctx: AuthContext) -> List[dict]:
        sessions: List[ActiveSession] = self.registry.list_for_user(ctx.user_id)
        return [
            {
                "id": s.id,
                "device_label": s.device_label,
                "ip_addr": s.ip_addr,
                "created_at": s.created_at.isoformat(),
                "last_seen_at": s.last_seen_at.isoformat() if s.last_seen_at else None,
                "expires_at": s.expires_at.isoformat(),
                "current": s.id == ctx.session_id,
            }
            for s in sessions
        ]

    @store_guarded
    async def revoke_session(self, ctx: AuthContext, session_id: str) -> None:
        if session_id == ctx.session_id:
            raise ValidationError(
                "use logout to end the current session", detail={"field": "session_id"}
            )
        session = self.registry.get(session_id)
        if session is None:
            raise NotFoundError("session not found")
        if session.user_id != ctx.user_id:
            raise ForbiddenError("session belongs to another user")
        await self.registry.revoke(session_id, self._now())

    # -- MFA -------------------------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    @store_guarded
    async def begin_mfa_enrollment(self, ctx: AuthContext) -> dict:
        return self.mfa.begin_enrollment(self._require_user(ctx.user_id))

    @store_guarded
    async def activate_mfa(self, ctx: AuthContext, code: str) -> int:
        """Enable MFA and sign out every existing session, the caller's included."""
        now = self._now()
        self.mfa.activate(ctx.user_id, code, now)
        return await self.registry.revoke_all_for_user(ctx.user_id, now)

    @store_guarded
    async def disable_mfa(self, ctx: AuthContext, code: str) -> None:
        self.mfa.disable(ctx.user_id, code)

    # -- passwords -------------------------------------------------------------

    @store_guarded
    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> int:
        if not self.passwords.verify_password(ctx.user_id, current_password or ""):
            raise InvalidCredentialsError("current password is incorrect")
        self.passwords.set_password(ctx.user_id, new_password)
        revoked = await self.registry.revoke_all_for_user(ctx.user_id, self._now())
        self.logger.info("password_changed", user_id=ctx.user_id, revoked_sessions=revoked)
        return revoked

    @store_guarded
    async def request_password_reset(self, email: str) -> dict:
        return self.resets.request(email)

    @store_guarded
    async def complete_password_reset(self, token: str, new_password: str) -> None:
        await self.resets.consume(token, new_password)

    # -- administration -------------------------------------------------------

    @store_guarded
    async def unlock_account(self, ctx: AuthContext, user_id: str) -> None:
        if ctx.role != "admin":
            raise ForbiddenError("admin role required")
        self._require_user(user_id)
        self.lockout.unlock(user_id)
