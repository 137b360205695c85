"""Job-level retry for transient failures."""

import pytest

from lp_hedger.engine.retry import (
    RATE_LIMIT_POLICY,
    TRANSIENT_POLICY,
    RetryPolicy,
    policy_for,
    run_with_retry,
)
from lp_hedger.services.hyperliquid_client import (
    ExchangeNetworkError,
    ExchangeRateLimitError,
    ExchangeTimeoutError,
    OrderRejectedError,
)
from lp_hedger.services.subgraph import SubgraphNetworkError


class Flaky:
    """Raises the queued errors in order, then returns ``result``."""

    def __init__(self, *errors, result="done"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestPolicyFor:
    def test_classification(self):
        assert policy_for(ExchangeTimeoutError()) is TRANSIENT_POLICY
        assert policy_for(ExchangeNetworkError()) is TRANSIENT_POLICY
        assert policy_for(SubgraphNetworkError()) is TRANSIENT_POLICY
        assert policy_for(ExchangeRateLimitError()) is RATE_LIMIT_POLICY
        assert policy_for(OrderRejectedError()) is None
        assert policy_for(ValueError()) is None

    def test_backoff_is_capped(self):
        policy = RetryPolicy(name="t", attempts=10, base_delay=1, max_delay=5, jitter=False)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1, 2, 4, 5]

    def test_rate_limit_waits_are_fixed(self):
        assert RATE_LIMIT_POLICY.delay_for(1) == RATE_LIMIT_POLICY.delay_for(4) == 30.0


class TestRunWithRetry:
    @pytest.mark.asyncio
    async def test_recovers_from_transient_errors(self):
        fn, sleep = Flaky(ExchangeTimeoutError("slow"), ExchangeNetworkError("reset")), SleepRecorder()
        assert await run_with_retry("t", fn, sleep=sleep) == "done"
        assert fn.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self):
        fn, sleep = Flaky(*[ExchangeTimeoutError("slow")] * 3), SleepRecorder()
        with pytest.raises(ExchangeTimeoutError):
            await run_with_retry("t", fn, sleep=sleep)
        assert fn.calls == TRANSIENT_POLICY.attempts

    @pytest.mark.asyncio
    async def test_rate_limit_has_its_own_budget(self):
        errors = [ExchangeRateLimitError("429")] * 4 + [ExchangeTimeoutError("slow")] * 2
        fn, sleep = Flaky(*errors), SleepRecorder()
        assert await run_with_retry("t", fn, sleep=sleep) == "done"
        assert fn.calls == 7
        assert sleep.delays[:4] == [30.0] * 4

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self):
        fn, sleep = Flaky(OrderRejectedError("no")), SleepRecorder()
        with pytest.raises(OrderRejectedError):
            await run_with_retry("t", fn, sleep=sleep)
        assert fn.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_passes_arguments(self):
        async def add(a, b=0):
            return a + b

        assert await run_with_retry("t", add, 2, b=3) == 5
