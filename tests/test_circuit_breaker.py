"""Per-user circuit breaker and its in-memory store."""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from lp_hedger.services.breaker_store import InMemoryBreakerStore
from lp_hedger.services.circuit_breaker import CircuitBreaker, CircuitOpenError, circuit_key


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _boom():
    raise RuntimeError("exchange down")


async def _ok():
    return "ok"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    store = InMemoryBreakerStore(clock=clock)
    return CircuitBreaker("test", store=store, failure_threshold=3, reset_timeout=1800, ttl=3600, clock=clock)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(_boom)
        assert await breaker.is_open()
        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, breaker):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(_boom)
        assert await breaker.call(_ok) == "ok"
        assert await breaker.failures() == 0
        with pytest.raises(RuntimeError):
            await breaker.call(_boom)
        assert await breaker.is_closed()

    @pytest.mark.asyncio
    async def test_half_open_after_timeout(self, breaker, clock):
        for _ in range(3):
            await breaker.record_failure()
        clock.now += 1801
        assert await breaker.is_closed()

        # The trial call fails: open again with a fresh timestamp
        with pytest.raises(RuntimeError):
            await breaker.call(_boom)
        assert await breaker.is_open()

    @pytest.mark.asyncio
    async def test_trial_success_closes(self, breaker, clock):
        for _ in range(3):
            await breaker.record_failure()
        clock.now += 1801
        assert await breaker.call(_ok) == "ok"
        assert await breaker.failures() == 0

    @pytest.mark.asyncio
    async def test_state_expires_with_ttl(self, breaker, clock):
        for _ in range(3):
            await breaker.record_failure()
        clock.now += 3601
        assert await breaker.failures() == 0

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        for _ in range(3):
            await breaker.record_failure()
        await breaker.reset()
        assert await breaker.is_closed()

    @pytest.mark.asyncio
    async def test_status(self, breaker, clock):
        status = await breaker.status()
        assert status == {"state": "closed", "failures": 0, "last_failure": None, "will_reset_at": None}

        for _ in range(3):
            await breaker.record_failure()
        status = await breaker.status()
        assert status["state"] == "open"
        assert status["failures"] == 3
        assert status["will_reset_at"].timestamp() == pytest.approx(clock.now + 1800)

    def test_user_key(self):
        breaker = CircuitBreaker.for_user(7, store=InMemoryBreakerStore())
        assert breaker.key == circuit_key(7) == "hedging:circuit:7"

    @pytest.mark.asyncio
    async def test_users_are_isolated(self):
        store = InMemoryBreakerStore()
        first = CircuitBreaker.for_user(1, store=store, failure_threshold=1)
        second = CircuitBreaker.for_user(2, store=store, failure_threshold=1)
        await first.record_failure()
        assert await first.is_open()
        assert await second.is_closed()


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_concurrent_failures_are_all_counted(self):
        store = InMemoryBreakerStore()
        breaker = CircuitBreaker.for_user(1, store=store)

        await asyncio.gather(*(breaker.record_failure() for _ in range(20)))

        assert await store.failure_count(breaker.key) == 20

    def test_failures_from_job_threads_are_all_counted(self):
        # The Telegram bot runs hedge syncs on its own thread and event loop
        store = InMemoryBreakerStore()

        async def fail_many():
            return [await store.record_failure("hedging:circuit:1", time.time(), 3600) for _ in range(200)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            counts = [
                count
                for result in pool.map(lambda _: asyncio.run(fail_many()), range(8))
                for count in result
            ]

        assert sorted(counts) == list(range(1, 1601))
        assert asyncio.run(store.failure_count("hedging:circuit:1")) == 1600
