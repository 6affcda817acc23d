from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from timekeeper.config import get_settings, reset_settings_cache
from timekeeper.logging import get_logger
from timekeeper.service.audit import LoggingAuditSink
from timekeeper.service.auth import AuthService
from timekeeper.service.lockout import LockoutPolicy, LockoutTracker
from timekeeper.service.mfa import MfaChallenge, SecretBox
from timekeeper.service.password_reset import LoggingResetNotifier, PasswordResetFlow
from timekeeper.service.passwords import PasswordManager, PasswordPolicy
from timekeeper.service.rate_limit import RateLimiter
from timekeeper.service.reaper import ExpiryReaper
from timekeeper.service.revocation import RevocationCache
from timekeeper.service.sessions import SessionRegistry
from timekeeper.service.signing import HmacTokenSigner
from timekeeper.service.tokens import TokenIssuer
from timekeeper.storage.memory import MemoryStore
from timekeeper.storage.postgres import PostgresStore
from timekeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    read_dsn=self.settings.read_database_url,
                    min_size=self.settings.database_pool_min,
                    max_size=self.settings.database_pool_max,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                read_replica=bool(self.settings.read_database_url),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_connect_timeout,
                    max_connections=self.settings.redis_pool_size,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                # Revocation checks and rate limits fall back to the durable store
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        settings = self.settings
        access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.audit = LoggingAuditSink()
        self.passwords = PasswordManager(self.store, PasswordPolicy.from_settings(settings))
        self.mfa = MfaChallenge(
            self.store, SecretBox(settings.mfa_key_material), issuer=settings.mfa_issuer
        )
        self.lockout = LockoutTracker(
            self.store, LockoutPolicy.from_settings(settings), audit=self.audit
        )
        self.rate_limiter = RateLimiter.from_settings(self.store, self.cache, settings)
        self.revocation = RevocationCache(self.store, self.cache, access_ttl=access_ttl)
        self.sessions = SessionRegistry(self.store, self.revocation)
        self.signer = HmacTokenSigner(
            str(settings.jwt_secret),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
        self.tokens = TokenIssuer(
            self.store,
            self.signer,
            self.revocation,
            self.sessions,
            access_ttl=access_ttl,
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            max_sessions=settings.max_concurrent_sessions,
            audit=self.audit,
        )
        self.resets = PasswordResetFlow(
            self.store,
            self.passwords,
            self.sessions,
            self.lockout,
            LoggingResetNotifier(),
            ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
        )
        self.reaper = ExpiryReaper(self.store)
        self.auth = AuthService(
            self.store,
            passwords=self.passwords,
            mfa=self.mfa,
            lockout=self.lockout,
            rate_limiter=self.rate_limiter,
            tokens=self.tokens,
            registry=self.sessions,
            resets=self.resets,
            audit=self.audit,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            max_concurrent_sessions=settings.max_concurrent_sessions,
            access_token_ttl_minutes=settings.access_token_ttl_minutes,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: RedisCache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
        return
    loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime
