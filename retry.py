"""
MarketRelay Retry
One bounded-retry combinator reused by every pipeline step.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Max attempts plus a linear backoff schedule."""
    max_attempts: int = 3
    base_delay: float = 3.0
    jitter: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = field(default_factory=lambda: (Exception,))

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return (self.base_delay + random.uniform(0, self.jitter)) * attempt


async def with_bounded_retry(
    fn: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    on_error: Optional[Callable[[BaseException, int], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run fn up to policy.max_attempts times.

    Args:
        fn: Coroutine function called with the 1-based attempt number
        policy: Attempts and backoff
        on_error: Called after each retryable failure; raising from it stops retrying
        sleep: Sleep function (swapped out in tests)

    Returns:
        The first successful result

    Raises:
        The last error once attempts are exhausted, any error outside
        policy.retry_on immediately, or whatever on_error raises
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn(attempt)
        except policy.retry_on as e:
            logger.warning(f"Attempt {attempt}/{policy.max_attempts} failed: {e}")
            if on_error is not None:
                await on_error(e, attempt)
            if attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.debug(f"Retrying in {delay:.1f}s")
            await sleep(delay)
