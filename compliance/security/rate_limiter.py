"""Fixed-window rate limiting over a pluggable counter store.

Production counters live in Redis (INCR + EXPIRE). The in-memory store
serves single-process deployments and tests.

Usage:
    from compliance.security.rate_limiter import rate_limiter

    allowed, retry_after = await rate_limiter.check("recovery:{email_hash}", limit=3, window=3600)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

from compliance.db.engine import redis_client

logger = logging.getLogger(__name__)


@dataclass
class Counter:
    count: int
    reset_at: float  # epoch seconds


class CounterStore(Protocol):
    """Atomic windowed counters keyed by string."""

    async def incr(self, key: str, window: int) -> Counter: ...

    async def get(self, key: str) -> Counter | None: ...

    async def cleanup(self) -> int: ...


class RedisCounterStore:
    """Counters backed by Redis INCR + EXPIRE."""

    def __init__(self, redis: object) -> None:
        self._redis = redis

    async def incr(self, key: str, window: int) -> Counter:
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, window)
        ttl = await self._redis.ttl(key)
        return Counter(count=int(count), reset_at=time.time() + max(ttl, 0))

    async def get(self, key: str) -> Counter | None:
        value = await self._redis.get(key)
        if value is None:
            return None
        ttl = await self._redis.ttl(key)
        return Counter(count=int(value), reset_at=time.time() + max(ttl, 0))

    async def cleanup(self) -> int:
        # Redis expires keys on its own
        return 0


class InMemoryCounterStore:
    """Process-local counters. Not shared between workers."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}

    async def incr(self, key: str, window: int) -> Counter:
        now = time.time()
        current = self._counters.get(key)
        if current is None or current.reset_at <= now:
            current = Counter(count=0, reset_at=now + window)
        current.count += 1
        self._counters[key] = current
        return Counter(count=current.count, reset_at=current.reset_at)

    async def get(self, key: str) -> Counter | None:
        current = self._counters.get(key)
        if current is None or current.reset_at <= time.time():
            return None
        return Counter(count=current.count, reset_at=current.reset_at)

    async def cleanup(self) -> int:
        now = time.time()
        stale = [key for key, counter in self._counters.items() if counter.reset_at <= now]
        for key in stale:
            del self._counters[key]
        return len(stale)


class RateLimiter:
    """Fixed-window rate limiter."""

    def __init__(self, store: CounterStore) -> None:
        self._store = store

    async def check(self, key: str, limit: int, window: int) -> tuple[bool, int]:
        """Count one request against `key`.

        Returns:
            (allowed, retry_after), where retry_after is seconds until the window
            resets, 0 when allowed.
        """
        try:
            counter = await self._store.incr(key, window)
        except Exception:
            logger.exception("Rate limiter store error for key %s", key)
            # Fail open: a counter outage must not lock users out
            return True, 0

        if counter.count > limit:
            retry_after = max(int(counter.reset_at - time.time()), 1)
            return False, retry_after
        return True, 0


rate_limiter = RateLimiter(RedisCounterStore(redis_client))
