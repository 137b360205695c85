"""Per-user circuit breaker around trade execution.

closed -> open after ``failure_threshold`` consecutive failures.
open -> closed after ``reset_timeout`` seconds without a new failure, or on
an explicit reset. A success clears the counter.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

from lp_hedger.config import settings
from lp_hedger.services.breaker_store import BreakerStore, get_breaker_store

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    """Raised instead of running the protected call while the circuit is open."""


def circuit_key(user_id: int) -> str:
    return f"hedging:circuit:{user_id}"


class CircuitBreaker:
    def __init__(
        self,
        key: str,
        store: BreakerStore | None = None,
        failure_threshold: int | None = None,
        reset_timeout: float | None = None,
        ttl: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.key = key
        self.store = store or get_breaker_store()
        self.failure_threshold = failure_threshold or settings.circuit_failure_threshold
        self.reset_timeout = reset_timeout if reset_timeout is not None else settings.circuit_reset_minutes * 60
        self.ttl = ttl or settings.circuit_ttl_minutes * 60
        self._clock = clock

    @classmethod
    def for_user(cls, user_id: int, **kwargs) -> "CircuitBreaker":
        return cls(circuit_key(user_id), **kwargs)

    async def call(self, fn: Callable[..., Awaitable], *args, **kwargs):
        """Run ``fn`` unless the circuit is open; re-raises the original error on failure."""
        if await self.is_open():
            raise CircuitOpenError("Circuit breaker is open due to consecutive failures")

        try:
            result = await fn(*args, **kwargs)
        except Exception:
            await self.record_failure()
            raise
        await self.record_success()
        return result

    async def failures(self) -> int:
        return await self.store.failure_count(self.key)

    async def is_open(self) -> bool:
        if await self.failures() < self.failure_threshold:
            return False
        return not await self._timeout_expired()

    async def is_closed(self) -> bool:
        return not await self.is_open()

    async def record_success(self):
        await self.store.clear(self.key)

    async def record_failure(self) -> int:
        count = await self.store.record_failure(self.key, self._clock(), self.ttl)
        if count == self.failure_threshold:
            logger.warning(f"[{self.key}] Circuit opened after {count} consecutive failures")
        return count

    async def reset(self):
        await self.store.clear(self.key)
        logger.info(f"[{self.key}] Circuit reset")

    async def _timeout_expired(self) -> bool:
        last = await self.store.last_failure(self.key)
        if last is None:
            return True
        return self._clock() > last + self.reset_timeout

    async def status(self) -> dict:
        is_open = await self.is_open()
        last = await self.store.last_failure(self.key)
        return {
            "state": "open" if is_open else "closed",
            "failures": await self.failures(),
            "last_failure": _to_datetime(last),
            "will_reset_at": _to_datetime(last + self.reset_timeout) if last is not None and is_open else None,
        }


def _to_datetime(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)
