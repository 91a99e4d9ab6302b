from __future__ import annotations

import heapq
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from tenantgate.logging import get_logger

logger = get_logger(__name__)

AUTH_LIMIT_MESSAGE = "Too many authentication attempts. Please try again later."
API_LIMIT_MESSAGE = "Too many requests. Please try again later."


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: int = 0


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_seconds: int
    message: str
    key_prefix: str = ""


class WindowStore(Protocol):
    async def hit(
        self, key: str, window_seconds: int, now: float
    ) -> tuple[int, float]:
        """Record one hit and return ``(count, reset_at)`` for the current window."""
        ...


class InMemoryWindowStore:
    """Process-local fixed-window counters guarded by a lock.

    Not linearizable across server instances; use the Redis window store
    when more than one process serves traffic.
    """

    def __init__(self, *, max_keys: int = 100_000) -> None:
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[int, float]] = {}
        self._max_keys = max_keys

    async def hit(self, key: str, window_seconds: int, now: float) -> tuple[int, float]:
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or now > entry[1]:
                if entry is None and len(self._windows) >= self._max_keys:
                    self._evict_expired(now)
                    if len(self._windows) >= self._max_keys:
                        self._evict_oldest(max(1, self._max_keys // 10))
                entry = (1, now + window_seconds)
            else:
                entry = (entry[0] + 1, entry[1])
            self._windows[key] = entry
            return entry

    def _evict_expired(self, now: float) -> None:
        stale = [k for k, (_, reset_at) in self._windows.items() if now > reset_at]
        for k in stale:
            self._windows.pop(k, None)

    def _evict_oldest(self, count: int) -> None:
        oldest = heapq.nsmallest(count, self._windows.items(), key=lambda item: item[1][1])
        for k, _ in oldest:
            self._windows.pop(k, None)
        logger.warning("rate_limit_windows_evicted", count=len(oldest), max_keys=self._max_keys)

    def sweep(self, now: Optional[float] = None) -> int:
        with self._lock:
            before = len(self._windows)
            self._evict_expired(time.time() if now is None else now)
            return before - len(self._windows)


class RateLimiter:
    """Fixed-window limiter over a pluggable window store."""

    def __init__(
        self,
        store: WindowStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._clock = clock

    async def check(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        now = self._clock()
        full_key = f"{policy.key_prefix}{key}"
        count, reset_at = await self.store.hit(full_key, policy.window_seconds, now)
        remaining = max(0, policy.max_requests - count)
        if count > policy.max_requests:
            retry_after = max(1, math.ceil(reset_at - now))
            logger.warning(
                "rate_limit_exceeded",
                key=full_key,
                count=count,
                limit=policy.max_requests,
                retry_after=retry_after,
            )
            return RateLimitDecision(
                allowed=False,
                limit=policy.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after_seconds=retry_after,
            )
        return RateLimitDecision(
            allowed=True,
            limit=policy.max_requests,
            remaining=remaining,
            reset_at=reset_at,
        )


def auth_policy(max_requests: int = 5, window_seconds: int = 15 * 60) -> RateLimitPolicy:
    return RateLimitPolicy(
        max_requests=max_requests,
        window_seconds=window_seconds,
        message=AUTH_LIMIT_MESSAGE,
        key_prefix="auth:",
    )


def api_policy(max_requests: int = 100, window_seconds: int = 60) -> RateLimitPolicy:
    return RateLimitPolicy(
        max_requests=max_requests,
        window_seconds=window_seconds,
        message=API_LIMIT_MESSAGE,
    )
