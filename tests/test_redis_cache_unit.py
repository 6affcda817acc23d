from datetime import datetime, timedelta, timezone

from timekeeper.storage.models import RateLimitWindow
from timekeeper.storage.redis_cache import RedisCache

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.queued = []

    def set(self, key, value, ex=None):
        self.queued.append((key, value, ex))

    async def execute(self):
        self.client.executed += 1
        for key, value, ex in self.queued:
            self.client.values[key] = value
            self.client.ttls[key] = ex


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.executed = 0

    def pipeline(self):
        return FakePipeline(self)

    async def get(self, key):
        return self.values.get(key)

    async def delete(self, key):
        self.values.pop(key, None)


class FakeScript:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def __call__(self, keys, args):
        self.calls.append((keys, args))
        return self.result


def _cache(script_result=0) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.client = FakeRedis()
    cache._fixed_window = FakeScript(script_result)
    return cache


def _window(key, limit=5):
    return RateLimitWindow(
        key=key, limit=limit, window_start=NOW, expires_at=NOW + timedelta(minutes=15)
    )


class TestTokenMarkers:
    async def test_markers_round_trip_with_ttl(self):
        cache = _cache()
        await cache.set_token_states(
            [("session", "s-1", True, 60), ("access", "j-1", False, 30)]
        )
        assert await cache.get_token_state("session", "s-1") is True
        assert await cache.get_token_state("access", "j-1") is False
        assert await cache.get_token_state("access", "unknown") is None
        assert cache.client.ttls["auth:session:s-1"] == 60

    async def test_expired_markers_are_not_written(self):
        cache = _cache()
        await cache.set_token_states([("session", "s-1", False, 0)])
        assert cache.client.executed == 0


class TestFixedWindows:
    async def test_counted_request_returns_none(self):
        cache = _cache(script_result=0)
        windows = [_window("ip:10.0.0.1"), _window("user:alice", limit=20)]
        assert await cache.hit_fixed_windows(windows, NOW) is None
        keys, args = cache._fixed_window.calls[0]
        assert all(key.startswith("rate:") for key in keys)
        assert "10.0.0.1" not in keys[0]
        assert args == [5, 20, 900, 900]

    async def test_rejection_names_the_full_window(self):
        cache = _cache(script_result=2)
        windows = [_window("ip:10.0.0.1"), _window("user:alice")]
        assert await cache.hit_fixed_windows(windows, NOW) is windows[1]

    def test_ttl_is_at_least_one_second(self):
        assert RedisCache._ttl_seconds(NOW - timedelta(seconds=5), NOW) == 1
        assert RedisCache._ttl_seconds(NOW.replace(tzinfo=None) + timedelta(seconds=90), NOW) == 90
