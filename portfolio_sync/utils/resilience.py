"""
Resilience utilities for error handling and fault tolerance.

This module provides:
- RetryPolicy: maps (attempt, error) to a retry decision with backoff delay
- retry_with_backoff decorator applying a RetryPolicy to async callables
"""

import asyncio
import random
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar, ParamSpec
from functools import wraps

from portfolio_sync.exceptions import (
    PortfolioSyncError,
    RateLimitedError,
    SecondaryRateLimitError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

# Type variables for generic decorator
P = ParamSpec('P')
T = TypeVar('T')

DEFAULT_SECONDARY_WAIT_SECONDS = 60.0


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry policy evaluation."""

    retry: bool
    delay: float = 0.0
    counts_against_budget: bool = True


class RetryPolicy:
    """
    Stateless retry decision function.

    Retries network failures, timeouts, 5xx responses and rate-limit signals.
    Validation errors, non-fast-forward updates and auth failures are never
    retried. Backoff is exponential with jitter::

        delay = min(max_delay, base_delay * 2 ** attempt) * uniform(0.5, 1.5)

    Rate-limit errors do not consume the ``max_retries`` budget; they are
    rescheduled after the quota reset instead.

    Args:
        max_retries: Maximum number of budgeted retries (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Cap on the pre-jitter delay in seconds (default: 30.0)
        secondary_wait: Wait used for secondary limits without Retry-After
        jitter: Source of the jitter factor, called with (low, high)
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        secondary_wait: float = DEFAULT_SECONDARY_WAIT_SECONDS,
        jitter: Callable[[float, float], float] = random.uniform,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.secondary_wait = secondary_wait
        self._jitter = jitter

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, PortfolioSyncError):
            return error.retryable
        return False

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter for a zero-based attempt number."""
        capped = min(self.max_delay, self.base_delay * (2 ** attempt))
        return capped * self._jitter(0.5, 1.5)

    def rate_limit_delay(self, error: RateLimitedError, now: Optional[datetime] = None) -> float:
        """Seconds to wait before a rate-limited call may be sent again."""
        if isinstance(error, SecondaryRateLimitError):
            if error.retry_after is not None:
                return max(0.0, error.retry_after)
            return self.secondary_wait
        if error.reset_at is not None:
            now = now or datetime.now(timezone.utc)
            return max(1.0, (error.reset_at - now).total_seconds())
        return self.secondary_wait

    def decide(self, attempt: int, error: BaseException, now: Optional[datetime] = None) -> RetryDecision:
        """
        Decide whether a failed attempt should be retried.

        Args:
            attempt: Zero-based number of budgeted retries already made
            error: Error raised by the attempt
            now: Current UTC time (for rate-limit reset computation)

        Returns:
            RetryDecision
        """
        if isinstance(error, RateLimitedError):
            return RetryDecision(
                retry=True,
                delay=self.rate_limit_delay(error, now),
                counts_against_budget=False,
            )

        if not self.is_retryable(error):
            return RetryDecision(retry=False)

        if attempt >= self.max_retries:
            return RetryDecision(retry=False)

        return RetryDecision(retry=True, delay=self.backoff_delay(attempt))


def retry_with_backoff(
    policy: Optional[RetryPolicy] = None,
    exceptions: tuple = (TransientNetworkError,),
    classify: Optional[Callable[[BaseException], BaseException]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
):
    """
    Decorator for retrying async functions with a RetryPolicy.

    Exceptions listed in ``exceptions`` are passed through ``classify``
    (when given) to map them onto the error taxonomy before the policy is
    consulted. The last error is re-raised unchanged once the policy stops
    retrying.

    Args:
        policy: Retry policy (default: RetryPolicy())
        exceptions: Exception types to catch and evaluate
        classify: Optional mapping from a caught exception to a taxonomy error
        sleep: Awaitable sleep function (injectable for tests)

    Example:
        @retry_with_backoff(RetryPolicy(max_retries=2), exceptions=(ConnectionError,))
        async def load():
            return await client.get(key)
    """
    policy = policy or RetryPolicy()

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempt = 0

            while True:
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 0:
                        logger.info(
                            f"{func.__name__} succeeded after {attempt} retries"
                        )

                    return result

                except exceptions as e:
                    classified = classify(e) if classify else e
                    decision = policy.decide(attempt, classified)

                    if not decision.retry:
                        logger.error(
                            f"{func.__name__} failed after {attempt + 1} attempts: {e}"
                        )
                        raise

                    if decision.counts_against_budget:
                        attempt += 1

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt}: {e}. "
                        f"Retrying in {decision.delay:.1f}s..."
                    )

                    await sleep(decision.delay)

        return async_wrapper

    return decorator
