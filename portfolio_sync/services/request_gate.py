"""
Request Gate component.

Every GitHub call goes through ``RequestGate.execute``. The gate holds the
quota state of one credential, queues callers in arrival order while the
quota is exhausted, bounds each call with a deadline, and retries failures
according to a RetryPolicy. One gate instance is shared by all pipelines
that use the same credential.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import httpx

from portfolio_sync.exceptions import (
    PortfolioSyncError,
    RateLimitedError,
    SecondaryRateLimitError,
    TransientNetworkError,
)
from portfolio_sync.models.rate_limit import RateLimitState
from portfolio_sync.services.github_errors import error_from_response
from portfolio_sync.utils.logging import get_logger, log_api_call
from portfolio_sync.utils.resilience import RetryPolicy


logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GateStats:
    """Counters exposed with the gate status."""

    total_requests: int = 0
    queued_requests: int = 0
    rate_limit_hits: int = 0
    retries: int = 0


class RequestGate:
    """
    Serializes and paces outgoing calls against a RateLimitState.

    Args:
        retry_policy: Policy deciding retries and backoff (default: RetryPolicy())
        request_timeout: Deadline in seconds for each dispatched call
        max_wait: Longest rate-limit wait a caller accepts before failing
        max_queue_size: Maximum number of callers waiting for admission
        clock: Returns the current UTC datetime (injectable for tests)
        sleep: Awaitable sleep (injectable for tests)
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        request_timeout: float = 10.0,
        max_wait: float = 300.0,
        max_queue_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_timeout = request_timeout
        self.max_wait = max_wait
        self.max_queue_size = max_queue_size
        self.state = RateLimitState()
        self.stats = GateStats()

        self._clock = clock
        self._sleep = sleep
        self._admission = asyncio.Lock()
        self._waiting = 0
        self._blocked_until: Optional[datetime] = None

    @property
    def queue_length(self) -> int:
        return self._waiting

    def _admission_wait(self, now: datetime) -> float:
        """Seconds the next caller must wait before dispatching."""
        self.state.replenish_if_reset(now)

        wait = 0.0
        if self.state.is_exhausted(now):
            wait = self.state.seconds_until_reset(now)
        if self._blocked_until is not None:
            if now < self._blocked_until:
                wait = max(wait, (self._blocked_until - now).total_seconds())
            else:
                self._blocked_until = None
        return wait

    async def _admit(self, operation: str) -> None:
        """Wait for quota in FIFO order, then reserve one call."""
        if self._waiting >= self.max_queue_size:
            raise RateLimitedError(
                f"{operation}: request queue is full",
                reset_at=self.state.reset_at,
                limit=self.state.limit,
                remaining=self.state.remaining,
            )

        self._waiting += 1
        queued = False
        try:
            # asyncio.Lock wakes waiters in arrival order
            async with self._admission:
                while True:
                    now = self._clock()
                    wait = self._admission_wait(now)
                    if wait <= 0:
                        break

                    if wait > self.max_wait:
                        raise RateLimitedError(
                            f"{operation}: rate limit resets in {wait:.0f}s, "
                            f"longer than the {self.max_wait:.0f}s maximum wait",
                            reset_at=now + timedelta(seconds=wait),
                            limit=self.state.limit,
                            remaining=self.state.remaining,
                        )

                    if not queued:
                        queued = True
                        self.stats.queued_requests += 1

                    logger.info(
                        f"Rate limit exhausted, waiting {wait:.1f}s before {operation}",
                        extra={"operation": operation, "queue_length": self._waiting},
                    )
                    await self._sleep(wait)

                self.state.reserve()
        finally:
            self._waiting -= 1

    def _record_rate_limit(self, error: RateLimitedError, delay: float) -> None:
        self.stats.rate_limit_hits += 1
        now = self._clock()
        if isinstance(error, SecondaryRateLimitError):
            self._blocked_until = now + timedelta(seconds=delay)
        else:
            self.state.remaining = 0
            if error.reset_at is not None and error.reset_at > now:
                self.state.reset_at = error.reset_at
            else:
                self.state.reset_at = now + timedelta(seconds=delay)

    async def execute(
        self,
        request_fn: Callable[[], Awaitable[httpx.Response]],
        operation: str = "GitHub API request",
        method: str = "GET",
    ) -> httpx.Response:
        """
        Dispatch a request through the gate.

        Args:
            request_fn: Zero-argument callable returning an awaitable response;
                called again for every retry
            operation: Operation name used in logs and error messages
            method: HTTP method, for logging

        Returns:
            Successful (2xx) response

        Raises:
            PortfolioSyncError: The last error once retries are exhausted or
                the error is not retryable; ``attempts`` holds the attempt count
        """
        attempt = 0
        rate_limited_wait = 0.0

        while True:
            await self._admit(operation)

            self.stats.total_requests += 1
            start_time = time.monotonic()
            error: PortfolioSyncError
            try:
                response = await asyncio.wait_for(request_fn(), timeout=self.request_timeout)
            except asyncio.TimeoutError as e:
                error = TransientNetworkError(
                    f"{operation}: timed out after {self.request_timeout:.0f}s"
                )
                error.__cause__ = e
            except httpx.TransportError as e:
                error = TransientNetworkError(f"{operation}: {e}")
                error.__cause__ = e
            else:
                self.state.update_from_headers(response.headers)
                duration_ms = (time.monotonic() - start_time) * 1000

                if response.is_success:
                    log_api_call(
                        logger,
                        service="github",
                        endpoint=operation,
                        method=method,
                        status_code=response.status_code,
                        duration_ms=duration_ms,
                        rate_limit_remaining=self.state.remaining,
                    )
                    return response

                error = error_from_response(response, operation)
                log_api_call(
                    logger,
                    service="github",
                    endpoint=operation,
                    method=method,
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                    error=error.message,
                    rate_limit_remaining=self.state.remaining,
                )

            error.attempts = attempt + 1
            decision = self.retry_policy.decide(attempt, error, self._clock())

            if isinstance(error, RateLimitedError):
                rate_limited_wait += decision.delay
                if rate_limited_wait > self.max_wait:
                    logger.error(
                        f"{operation} still rate limited after waiting {rate_limited_wait:.0f}s",
                        extra={"operation": operation},
                    )
                    raise error
                self._record_rate_limit(error, decision.delay)
                continue

            if not decision.retry:
                if error.retryable:
                    logger.error(
                        f"{operation} failed after {attempt + 1} attempts: {error.message}",
                        extra={"operation": operation, "attempts": attempt + 1},
                    )
                raise error

            attempt += 1
            self.stats.retries += 1
            logger.warning(
                f"{operation} failed on attempt {attempt}: {error.message}. "
                f"Retrying in {decision.delay:.1f}s...",
                extra={"operation": operation, "attempts": attempt},
            )
            await self._sleep(decision.delay)

    def get_status(self) -> dict:
        """Snapshot of quota, queue and counters."""
        now = self._clock()
        return {
            "rate_limit": self.state.model_dump(mode="json"),
            "queue": {
                "length": self._waiting,
                "is_processing": self._admission.locked(),
            },
            "stats": {
                "total_requests": self.stats.total_requests,
                "queued_requests": self.stats.queued_requests,
                "rate_limit_hits": self.stats.rate_limit_hits,
                "retries": self.stats.retries,
            },
            "seconds_until_reset": self.state.seconds_until_reset(now),
            "can_dispatch": self._admission_wait(now) <= 0,
        }
