import asyncio

from fastapi.testclient import TestClient

from tenantgate import app as app_module
from tenantgate.service.rate_limit import (
    AUTH_LIMIT_MESSAGE,
    InMemoryWindowStore,
    RateLimiter,
    api_policy,
    auth_policy,
)
from tenantgate.storage.redis_cache import RedisWindowStore, _normalize_rate_key


class FakeClock:
    def __init__(self, now: float = 10_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_policy_defaults():
    auth = auth_policy()
    assert (auth.max_requests, auth.window_seconds, auth.key_prefix) == (5, 900, "auth:")
    assert auth.message == AUTH_LIMIT_MESSAGE
    api = api_policy()
    assert (api.max_requests, api.window_seconds, api.key_prefix) == (100, 60, "")


async def test_sixth_attempt_in_window_is_denied():
    clock = FakeClock()
    limiter = RateLimiter(InMemoryWindowStore(), clock=clock)
    policy = auth_policy()
    decisions = [await limiter.check("10.0.0.1", policy) for _ in range(5)]
    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0]

    clock.now += 30
    denied = await limiter.check("10.0.0.1", policy)
    assert not denied.allowed
    assert denied.remaining == 0
    assert 0 < denied.retry_after_seconds <= 900
    assert denied.retry_after_seconds == 870


async def test_window_resets_after_expiry():
    clock = FakeClock()
    limiter = RateLimiter(InMemoryWindowStore(), clock=clock)
    policy = auth_policy(max_requests=1, window_seconds=60)
    assert (await limiter.check("k", policy)).allowed
    assert not (await limiter.check("k", policy)).allowed
    clock.now += 61
    assert (await limiter.check("k", policy)).allowed


async def test_keys_and_prefixes_are_independent():
    clock = FakeClock()
    limiter = RateLimiter(InMemoryWindowStore(), clock=clock)
    auth = auth_policy(max_requests=1, window_seconds=60)
    api = api_policy(max_requests=1, window_seconds=60)
    assert (await limiter.check("ip-a", auth)).allowed
    assert (await limiter.check("ip-b", auth)).allowed
    assert (await limiter.check("ip-a", api)).allowed
    assert not (await limiter.check("ip-a", auth)).allowed


async def test_retry_after_is_at_least_one_second():
    clock = FakeClock()
    limiter = RateLimiter(InMemoryWindowStore(), clock=clock)
    policy = auth_policy(max_requests=1, window_seconds=60)
    await limiter.check("k", policy)
    clock.now += 59.99
    denied = await limiter.check("k", policy)
    assert denied.retry_after_seconds == 1


def test_in_memory_sweep_drops_expired_windows():
    store = InMemoryWindowStore()
    asyncio.run(store.hit("a", 10, 100.0))
    asyncio.run(store.hit("b", 100, 100.0))
    assert store.sweep(now=150.0) == 1


async def test_in_memory_store_stays_bounded_with_live_windows():
    store = InMemoryWindowStore(max_keys=20)
    for i in range(200):
        await store.hit(f"ip-{i}", 900, 1000.0 + i)
    assert len(store._windows) <= 20
    # Newest windows survive, oldest go first
    assert "ip-199" in store._windows
    assert "ip-0" not in store._windows
    count, _ = await store.hit("ip-199", 900, 1200.0)
    assert count == 2


class FakeWindowCache:
    def __init__(self):
        self.counts = {}

    async def incr_window(self, key, window_seconds):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key], window_seconds * 1000 - 500


async def test_redis_window_store_translates_ttl():
    cache = FakeWindowCache()
    limiter = RateLimiter(RedisWindowStore(cache), clock=FakeClock(500.0))
    policy = auth_policy(max_requests=1, window_seconds=60)
    first = await limiter.check("ip", policy)
    assert first.allowed
    assert first.reset_at == 500.0 + 59.5
    second = await limiter.check("ip", policy)
    assert not second.allowed
    assert second.retry_after_seconds == 60
    assert list(cache.counts) == ["auth:ip"]


def test_redis_keys_are_hashed():
    key = _normalize_rate_key("auth:1.2.3.4\r\nFLUSHALL")
    assert key.startswith("rate:")
    assert "\n" not in key


def test_login_endpoint_returns_429_after_five_attempts():
    client = TestClient(app_module.app)
    payload = {"email": "nobody@acme.test", "password": "whatever-1"}
    for _ in range(5):
        resp = client.post("/v1/auth/login", json=payload)
        assert resp.status_code == 401
        assert "X-RateLimit-Limit" in resp.headers

    resp = client.post("/v1/auth/login", json=payload)
    assert resp.status_code == 429
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "rate_limited"
    assert body["error"]["message"] == AUTH_LIMIT_MESSAGE
    retry_after = int(resp.headers["Retry-After"])
    assert 0 < retry_after <= 900
    assert body["error"]["details"]["retry_after"] == retry_after
    assert resp.headers["X-RateLimit-Remaining"] == "0"


def test_auth_limit_is_keyed_by_client_ip():
    client = TestClient(app_module.app)
    payload = {"email": "nobody@acme.test", "password": "whatever-1"}
    for _ in range(5):
        client.post("/v1/auth/login", json=payload, headers={"X-Forwarded-For": "10.0.0.1"})
    blocked = client.post("/v1/auth/login", json=payload, headers={"X-Forwarded-For": "10.0.0.1"})
    other = client.post("/v1/auth/login", json=payload, headers={"X-Forwarded-For": "10.0.0.2"})
    assert blocked.status_code == 429
    assert other.status_code == 401
