from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, Tuple

from timekeeper.logging import get_logger
from timekeeper.service.audit import AuditSink, report
from timekeeper.service.errors import InvalidTokenError, TokenReuseDetectedError
from timekeeper.service.passwords import generate_token, hash_token
from timekeeper.service.revocation import RevocationCache
from timekeeper.service.sessions import SessionRegistry
from timekeeper.service.signing import AccessClaims, TokenSigner
from timekeeper.storage.models import ActiveSession, RefreshToken, User, new_id, utcnow

logger = get_logger(__name__)


class TokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session_bundle(
        self,
        refresh_token: RefreshToken,
        session: ActiveSession,
        *,
        max_sessions: int,
        now: datetime,
    ) -> List[ActiveSession]: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        old_token_id: str,
        *,
        now: datetime,
        new_refresh_token: RefreshToken,
        new_session: ActiveSession,
    ) -> Tuple[bool, Optional[ActiveSession]]: ...


@dataclass
class AuthContext:
    user_id: str
    username: str
    role: str
    session_id: str
    jti: str


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    session: ActiveSession
    access_expires_at: datetime
    refresh_expires_at: datetime
    evicted_session_ids: List[str] = field(default_factory=list)

    def as_response(self, now: datetime) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": "bearer",
            "expires_in": max(0, int((self.access_expires_at - now).total_seconds())),
            "refresh_token": self.refresh_token,
            "session_id": self.session.id,
        }


class TokenIssuer:
    """Mints access/refresh pairs, rotates refresh tokens and validates access tokens."""

    def __init__(
        self,
        store: TokenStore,
        signer: TokenSigner,
        revocation: RevocationCache,
        registry: SessionRegistry,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        max_sessions: int,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.revocation = revocation
        self.registry = registry
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.max_sessions = max_sessions
        self.audit = audit
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _mint(
        self,
        user: User,
        now: datetime,
        *,
        device_label: Optional[str],
        ip_addr: Optional[str],
    ) -> Tuple[str, RefreshToken, ActiveSession, str]:
        secret = generate_token()
        refresh = RefreshToken.new(user.id, hash_token(secret), self.refresh_ttl, now=now)
        session = ActiveSession(
            id=new_id(),
            user_id=user.id,
            refresh_token_id=refresh.id,
            access_jti=new_id(),
            expires_at=refresh.expires_at,
            created_at=now,
            last_seen_at=now,
            device_label=device_label,
            ip_addr=ip_addr,
        )
        claims = AccessClaims(
            sub=user.id,
            username=user.username,
            role=user.role,
            sid=session.id,
            jti=session.access_jti,
            iat=int(now.timestamp()),
            exp=int((now + self.access_ttl).timestamp()),
        )
        return secret, refresh, session, self.signer.sign(claims)

    async def issue(
        self,
        user: User,
        *,
        device_label: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> IssuedTokens:
        now = self._now()
        secret, refresh, session, access = self._mint(
            user, now, device_label=device_label, ip_addr=ip_addr
        )
        evicted = self.store.create_session_bundle(
            refresh, session, max_sessions=self.max_sessions, now=now
        )
        if evicted:
            await self.revocation.mark_revoked(evicted, now)
            logger.info(
                "sessions_evicted",
                user_id=user.id,
                session_ids=[s.id for s in evicted],
                max_sessions=self.max_sessions,
            )
        await self.revocation.mark_active(session, now)
        logger.info("tokens_issued", user_id=user.id, session_id=session.id)
        return IssuedTokens(
            access_token=access,
            refresh_token=secret,
            session=session,
            access_expires_at=now + self.access_ttl,
            refresh_expires_at=refresh.expires_at,
            evicted_session_ids=[s.id for s in evicted],
        )

    async def _reuse_detected(self, record: RefreshToken, now: datetime) -> None:
        revoked = await self.registry.revoke_all_for_user(record.user_id, now)
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            refresh_token_id=record.id,
            revoked_sessions=revoked,
        )
        report(
            self.audit,
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            refresh_token_id=record.id,
            revoked_sessions=revoked,
        )
        raise TokenReuseDetectedError(
            "refresh token was already used; all sessions have been signed out"
        )

    async def rotate(
        self,
        refresh_secret: Optional[str],
        *,
        device_label: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> IssuedTokens:
        if not refresh_secret or not refresh_secret.strip():
            raise InvalidTokenError("invalid refresh token")
        now = self._now()
        record = self.store.get_refresh_token_by_hash(hash_token(refresh_secret.strip()))
        if record is None:
            raise InvalidTokenError("invalid refresh token")
        if record.used_at is not None:
            await self._reuse_detected(record, now)
        if record.expires_at <= now:
            raise InvalidTokenError("refresh token expired")
        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            raise InvalidTokenError("invalid refresh token")

        secret, refresh, session, access = self._mint(
            user, now, device_label=device_label, ip_addr=ip_addr
        )
        won, replaced = self.store.rotate_refresh_token(
            record.id, now=now, new_refresh_token=refresh, new_session=session
        )
        if not won:
            # Another request consumed this token between our read and the update
            await self._reuse_detected(record, now)
        if replaced:
            await self.revocation.mark_revoked([replaced], now)
        await self.revocation.mark_active(session, now)
        logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            session_id=session.id,
            previous_session_id=replaced.id if replaced else None,
        )
        return IssuedTokens(
            access_token=access,
            refresh_token=secret,
            session=session,
            access_expires_at=now + self.access_ttl,
            refresh_expires_at=refresh.expires_at,
        )

    async def revoke_refresh_token(self, refresh_secret: Optional[str]) -> Optional[ActiveSession]:
        """Invalidate the session behind a refresh token; unknown tokens are a no-op."""
        if not refresh_secret or not refresh_secret.strip():
            return None
        record = self.store.get_refresh_token_by_hash(hash_token(refresh_secret.strip()))
        if record is None:
            return None
        return await self.registry.revoke_by_refresh_token_id(record.id, self._now())

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise InvalidTokenError("missing access token")
        claims = self.signer.verify(access_token)
        now = self._now()
        if not await self.revocation.is_access_active(claims.jti, now):
            raise InvalidTokenError("access token revoked")
        self.registry.touch(claims.sid, now)
        return AuthContext(
            user_id=claims.sub,
            username=claims.username,
            role=claims.role,
            session_id=claims.sid,
            jti=claims.jti,
        )
