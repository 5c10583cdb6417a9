"""Exponential backoff shared by the job queue and the HTTP client.

``max_retries`` counts retries after the first attempt, so a strategy
with ``max_retries=3`` allows four attempts in total. Delays are in
seconds and computed from the number of failures so far (1-based):

    min(base_delay * multiplier ** (failures - 1), max_delay)

Usage:
    strategy = RetryStrategy(max_retries=3, base_delay=1.0, max_delay=10.0)
    result = await execute_with_retry(send, strategy, on_retry=log_retry)
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from core.exceptions import EngineError


@dataclass
class RetryStrategy:
    """Exponential retry/backoff policy."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0

    def compute_delay(self, attempt: int) -> float:
        """Delay before the retry that follows failure number ``attempt`` (1-based)."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        return round(min(delay, self.max_delay), 3)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Whether failure number ``attempt`` (1-based) should be retried."""
        if attempt > self.max_retries:
            return False

        if isinstance(error, EngineError):
            return error.retryable

        return True


async def execute_with_retry(
    func: Callable[[], Awaitable],
    strategy: RetryStrategy,
    on_retry: Optional[Callable] = None,
    should_retry: Optional[Callable[[int, Exception], bool]] = None,
):
    """Run ``func`` until it succeeds or the strategy gives up.

    Args:
        func: Zero-argument async callable performing one attempt.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, error, delay) called before each wait.
        should_retry: Optional predicate overriding strategy.should_retry.

    Returns:
        The result of the first successful attempt.

    Raises:
        The last exception once retries are exhausted or the error is not retryable.
    """
    decide = should_retry or strategy.should_retry
    attempt = 0

    while True:
        try:
            return await func()
        except Exception as e:
            attempt += 1
            if not decide(attempt, e):
                raise

            delay = strategy.compute_delay(attempt)
            if on_retry:
                on_retry(attempt, e, delay)

            await asyncio.sleep(delay)
