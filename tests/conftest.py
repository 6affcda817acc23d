import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, Optional

# Set before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from timekeeper.service.audit import LoggingAuditSink  # noqa: E402
from timekeeper.service.auth import AuthService  # noqa: E402
from timekeeper.service.lockout import LockoutPolicy, LockoutTracker  # noqa: E402
from timekeeper.service.mfa import MfaChallenge, SecretBox  # noqa: E402
from timekeeper.service.password_reset import PasswordResetFlow  # noqa: E402
from timekeeper.service.passwords import PasswordManager, PasswordPolicy  # noqa: E402
from timekeeper.service.rate_limit import RateLimiter, RateLimitRule  # noqa: E402
from timekeeper.service.reaper import ExpiryReaper  # noqa: E402
from timekeeper.service.revocation import RevocationCache  # noqa: E402
from timekeeper.service.runtime import reset_runtime_for_tests  # noqa: E402
from timekeeper.service.sessions import SessionRegistry  # noqa: E402
from timekeeper.service.signing import HmacTokenSigner  # noqa: E402
from timekeeper.service.tokens import TokenIssuer  # noqa: E402
from timekeeper.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"
STRONG_PASSWORD = "Correct-Horse-42!"


class FakeClock:
    """Deterministic clock; call it for a datetime, advance it by hand."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeCache:
    """In-memory stand-in exposing the RedisCache surface used by the services."""

    def __init__(self):
        self.tokens: Dict[str, bool] = {}
        self.counters: Dict[str, int] = {}
        self.available = True
        self.writes = 0

    def _check(self) -> None:
        if not self.available:
            raise ConnectionError("redis unreachable")

    async def set_token_states(self, entries) -> None:
        self._check()
        for kind, token_id, active, ttl in entries:
            if ttl <= 0:
                continue
            self.tokens[f"{kind}:{token_id}"] = active
            self.writes += 1

    async def get_token_state(self, kind: str, token_id: str) -> Optional[bool]:
        self._check()
        return self.tokens.get(f"{kind}:{token_id}")

    async def hit_fixed_windows(self, windows, now):
        self._check()
        slots = [f"{w.key}:{int(w.window_start.timestamp())}" for w in windows]
        for window, slot in zip(windows, slots):
            if self.counters.get(slot, 0) >= window.limit:
                return window
        for slot in slots:
            self.counters[slot] = self.counters.get(slot, 0) + 1
        return None

    def clear(self) -> None:
        self.tokens.clear()
        self.counters.clear()

    async def close(self) -> None:
        return None


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send_reset(self, user, token, expires_at):
        self.sent.append((user.id, token))


class RecordingAuditSink:
    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    def record(self, event, *, user_id, **fields):
        if self.fail:
            raise RuntimeError("audit backend down")
        self.events.append((event, user_id, fields))


def build_stack(
    *,
    clock: Optional[FakeClock] = None,
    cache=None,
    store: Optional[MemoryStore] = None,
    audit=None,
    max_sessions: int = 3,
    lockout_policy: Optional[LockoutPolicy] = None,
    ip_rule: RateLimitRule = RateLimitRule("ip", 1000, 900),
    user_rule: RateLimitRule = RateLimitRule("user", 1000, 3600),
    access_ttl: timedelta = timedelta(hours=1),
    refresh_ttl: timedelta = timedelta(days=7),
) -> SimpleNamespace:
    """Wire every service against one MemoryStore and one clock."""
    clock = clock or FakeClock()
    store = store or MemoryStore()
    audit = audit if audit is not None else LoggingAuditSink()
    passwords = PasswordManager(store, PasswordPolicy(history_count=3))
    mfa = MfaChallenge(store, SecretBox(TEST_SECRET), issuer="Timekeeper", clock=clock.timestamp)
    lockout = LockoutTracker(store, lockout_policy or LockoutPolicy(), audit=audit)
    limiter = RateLimiter(store, cache, ip_rule=ip_rule, user_rule=user_rule)
    revocation = RevocationCache(store, cache, access_ttl=access_ttl)
    registry = SessionRegistry(store, revocation)
    signer = HmacTokenSigner(
        TEST_SECRET, issuer="timekeeper", audience="timekeeper-clients", clock=clock.timestamp
    )
    tokens = TokenIssuer(
        store,
        signer,
        revocation,
        registry,
        access_ttl=access_ttl,
        refresh_ttl=refresh_ttl,
        max_sessions=max_sessions,
        audit=audit,
        clock=clock,
    )
    resets = PasswordResetFlow(
        store,
        passwords,
        registry,
        lockout,
        RecordingNotifier(),
        clock=clock,
    )
    auth = AuthService(
        store,
        passwords=passwords,
        mfa=mfa,
        lockout=lockout,
        rate_limiter=limiter,
        tokens=tokens,
        registry=registry,
        resets=resets,
        audit=audit,
        clock=clock,
    )
    return SimpleNamespace(
        clock=clock,
        store=store,
        cache=cache,
        audit=audit,
        passwords=passwords,
        mfa=mfa,
        lockout=lockout,
        limiter=limiter,
        revocation=revocation,
        registry=registry,
        signer=signer,
        tokens=tokens,
        resets=resets,
        reaper=ExpiryReaper(store, clock=clock),
        auth=auth,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def stack(clock):
    return build_stack(clock=clock)


@pytest.fixture
def alice(stack):
    return stack.auth.create_user("alice", STRONG_PASSWORD, email="alice@example.com")


@pytest.fixture
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
