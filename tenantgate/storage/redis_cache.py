from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis

# Atomic fixed-window counter: first hit in a window sets the expiry.
_FIXED_WINDOW_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


def _ttl_seconds(expires_at: datetime) -> int:
    """Seconds until ``expires_at``, clamped to at least 1 so Redis accepts it."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _normalize_rate_key(key: str) -> str:
    """Hash limiter keys so client-controlled parts cannot inject delimiters."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"rate:{digest}"


def _decode_state(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Thin Redis wrapper for limiter windows and OAuth state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(_FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def incr_window(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Return ``(count, ttl_ms)`` after counting one hit against ``key``."""
        count, ttl_ms = await self._fixed_window(
            keys=[_normalize_rate_key(key)], args=[int(window_seconds * 1000)]
        )
        return int(count), int(ttl_ms)

    async def set_oauth_state(self, state: str, payload: dict[str, Any], expires_at: datetime) -> None:
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[dict[str, Any]]:
        """Atomically get and delete OAuth state so it cannot be replayed."""
        return _decode_state(await self.client.getdel(f"auth:oauth:{state}"))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for tests.

    Avoids binding an async pool to pytest's per-test event loops while
    exposing the same awaitable surface as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(_FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def incr_window(self, key: str, window_seconds: int) -> tuple[int, int]:
        count, ttl_ms = self._fixed_window(
            keys=[_normalize_rate_key(key)], args=[int(window_seconds * 1000)]
        )
        return int(count), int(ttl_ms)

    async def set_oauth_state(self, state: str, payload: dict[str, Any], expires_at: datetime) -> None:
        self._sync_client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[dict[str, Any]]:
        return _decode_state(self._sync_client.getdel(f"auth:oauth:{state}"))

    async def close(self) -> None:
        self._sync_client.close()


class RedisWindowStore:
    """Limiter window store shared by every process that points at one Redis."""

    def __init__(self, cache: RedisCache | SyncRedisCache) -> None:
        self.cache = cache

    async def hit(self, key: str, window_seconds: int, now: float) -> tuple[int, float]:
        count, ttl_ms = await self.cache.incr_window(key, window_seconds)
        return count, now + ttl_ms / 1000.0
