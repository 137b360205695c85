"""Job-level retry policy for transient infrastructure failures.

Timeouts and network errors get a few attempts with exponential backoff;
rate limits get more attempts with a long fixed wait. Everything else
(rejected orders, validation failures, open circuits) is not retried here.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

from lp_hedger.services.hyperliquid_client import (
    ExchangeNetworkError,
    ExchangeRateLimitError,
    ExchangeTimeoutError,
)
from lp_hedger.services.subgraph import SubgraphNetworkError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    attempts: int  # total attempts, including the first
    base_delay: float
    backoff_multiplier: float = 2.0
    max_delay: float = 300.0
    jitter: bool = True

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        delay = min(self.base_delay * (self.backoff_multiplier ** (retry_number - 1)), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.75, 1.25)
        return delay


TRANSIENT_POLICY = RetryPolicy(name="transient", attempts=3, base_delay=3.0)
RATE_LIMIT_POLICY = RetryPolicy(
    name="rate_limit", attempts=5, base_delay=30.0, backoff_multiplier=1.0, jitter=False
)


def policy_for(exc: BaseException) -> RetryPolicy | None:
    if isinstance(exc, ExchangeRateLimitError):
        return RATE_LIMIT_POLICY
    if isinstance(exc, (ExchangeTimeoutError, ExchangeNetworkError, SubgraphNetworkError)):
        return TRANSIENT_POLICY
    return None


async def run_with_retry(
    label: str,
    fn: Callable[..., Awaitable],
    *args,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
    **kwargs,
):
    """Await ``fn`` and retry it while its failures stay transient.

    Attempts are counted per policy, so a unit that hits a rate limit and
    then a timeout draws on both budgets independently. The last error is
    re-raised once a budget is exhausted.
    """
    attempts: dict[str, int] = {}
    while True:
        try:
            return await fn(*args, **kwargs)
        except Exception as e:
            policy = policy_for(e)
            if policy is None:
                raise
            attempts[policy.name] = attempts.get(policy.name, 1) + 1
            if attempts[policy.name] > policy.attempts:
                logger.error(f"[{label}] Giving up after {policy.attempts} {policy.name} attempts: {e}")
                raise
            delay = policy.delay_for(attempts[policy.name] - 1)
            logger.warning(
                f"[{label}] {policy.name} failure (attempt {attempts[policy.name] - 1}/{policy.attempts}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            await sleep(delay)
