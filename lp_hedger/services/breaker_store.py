"""Shared, expiring storage for circuit-breaker state.

The failure counter must be visible to every job execution and must survive
overlapping runs without lost updates, so stores expose a narrow set of
atomic operations instead of raw get/set.
"""

import logging
import threading
import time
from typing import Callable

import redis.asyncio as redis

from lp_hedger.config import settings

logger = logging.getLogger(__name__)

_store_instance: "BreakerStore | None" = None


class BreakerStore:
    """Interface for breaker state keyed by circuit name."""

    async def record_failure(self, key: str, at: float, ttl_seconds: int) -> int:
        """Atomically increment the failure count, stamp ``at`` and refresh the TTL.

        Returns the new count.
        """
        raise NotImplementedError

    async def failure_count(self, key: str) -> int:
        raise NotImplementedError

    async def last_failure(self, key: str) -> float | None:
        raise NotImplementedError

    async def clear(self, key: str):
        raise NotImplementedError


class InMemoryBreakerStore(BreakerStore):
    """Process-local store; only shared between jobs of one process."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[int, float, float]] = {}  # key -> (count, last_failure, expires_at)

    def _live_entry(self, key: str) -> tuple[int, float, float] | None:
        entry = self._entries.get(key)
        if entry and entry[2] <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def record_failure(self, key: str, at: float, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live_entry(key)
            count = (entry[0] if entry else 0) + 1
            self._entries[key] = (count, at, self._clock() + ttl_seconds)
            return count

    async def failure_count(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            return entry[0] if entry else 0

    async def last_failure(self, key: str) -> float | None:
        with self._lock:
            entry = self._live_entry(key)
            return entry[1] if entry else None

    async def clear(self, key: str):
        with self._lock:
            self._entries.pop(key, None)


class RedisBreakerStore(BreakerStore):
    """Redis-backed store shared by every worker pointed at the same server."""

    def __init__(self, url: str):
        self._redis = redis.from_url(url, decode_responses=True)

    @staticmethod
    def _keys(key: str) -> tuple[str, str]:
        return f"{key}:failures", f"{key}:last_failure"

    async def record_failure(self, key: str, at: float, ttl_seconds: int) -> int:
        failures_key, last_key = self._keys(key)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(failures_key)
            pipe.expire(failures_key, ttl_seconds)
            pipe.set(last_key, repr(at), ex=ttl_seconds)
            count, _, _ = await pipe.execute()
        return int(count)

    async def failure_count(self, key: str) -> int:
        failures_key, _ = self._keys(key)
        value = await self._redis.get(failures_key)
        return int(value) if value else 0

    async def last_failure(self, key: str) -> float | None:
        _, last_key = self._keys(key)
        value = await self._redis.get(last_key)
        return float(value) if value else None

    async def clear(self, key: str):
        await self._redis.delete(*self._keys(key))

    async def close(self):
        await self._redis.aclose()


def get_breaker_store() -> BreakerStore:
    """Store singleton: Redis when LPH_REDIS_URL is set, in-process otherwise."""
    global _store_instance
    if _store_instance is None:
        if settings.redis_url:
            _store_instance = RedisBreakerStore(settings.redis_url)
            logger.info("Circuit breaker state stored in Redis")
        else:
            _store_instance = InMemoryBreakerStore()
            logger.warning("LPH_REDIS_URL not set; circuit breaker state is process-local")
    return _store_instance
