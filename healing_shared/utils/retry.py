"""
Self-Healing Engine - Retry and Circuit Breaking
================================================

Two pieces are shared by the job runner and the outbound webhook paths:

- ``retry_async`` re-runs a coroutine function on transient errors with
  exponential backoff. The job runner uses it with the engine's transient
  error types so configuration mistakes fail on the first attempt.
- ``CircuitBreaker`` stops calling a webhook endpoint that keeps failing
  and lets a single trial call through once the reset timeout passes.

``calculate_delay`` is also used directly by the retry action to schedule
the next attempt against a failed operation.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Type, TypeVar
from collections.abc import Awaitable

from healing_shared.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Retry policy for ``retry_async``.

    Attributes:
        max_attempts: Total attempts, the first one included
        base_delay: Seconds to wait before the first retry
        max_delay: Upper bound on any single wait
        backoff_multiplier: Growth factor between successive waits
        retryable_exceptions: Errors worth another attempt; others propagate
        on_retry: Called with (attempt number, error) before each wait
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0
    retryable_exceptions: tuple[Type[Exception], ...] = field(
        default_factory=lambda: (Exception,)
    )
    on_retry: Optional[Callable[[int, Exception], None]] = None


def calculate_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    backoff_multiplier: float
) -> float:
    """
    Backoff delay before retry number ``attempt``.

    Args:
        attempt: Zero for the first retry, one for the second, and so on
        base_delay: Delay for the first retry in seconds
        max_delay: Cap in seconds
        backoff_multiplier: Factor applied per retry

    Returns:
        ``base_delay * backoff_multiplier ** attempt``, capped at ``max_delay``
    """
    return min(base_delay * (backoff_multiplier ** attempt), max_delay)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying retryable failures.

    Raises:
        The last retryable error once ``max_attempts`` is spent, or the
        first non-retryable error immediately.
    """
    config = config or RetryConfig()
    name = getattr(func, "__name__", "operation")
    attempt = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            attempt += 1
            if attempt >= config.max_attempts:
                logger.error(
                    f"{name} failed after {attempt} attempt(s): {e}",
                    extra={"function": name, "attempts": attempt, "error": str(e)}
                )
                raise

            delay = calculate_delay(
                attempt - 1, config.base_delay, config.max_delay, config.backoff_multiplier
            )
            logger.warning(
                f"{name} attempt {attempt}/{config.max_attempts} failed, retrying in {delay:.2f}s",
                extra={"function": name, "attempt": attempt, "delay": delay, "error": str(e)}
            )
            if config.on_retry:
                config.on_retry(attempt, e)
            await asyncio.sleep(delay)


class CircuitOpenError(Exception):
    """The endpoint's circuit is open; the call was not attempted."""


class CircuitBreaker:
    """
    Failure counter for one outbound endpoint.

    ``closed`` passes calls through. After ``failure_threshold`` consecutive
    failures it turns ``open`` and refuses calls until ``reset_timeout``
    seconds have passed, then ``half_open`` admits one trial call whose
    outcome closes or reopens it.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = self.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def can_execute(self) -> bool:
        """Whether a call may go out now. Moves open to half_open once the timeout passes."""
        if self._state == self.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._state = self.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit half-open, allowing a trial call")

        if self._state == self.HALF_OPEN:
            return not self._trial_in_flight
        return self._state == self.CLOSED

    def record_success(self) -> None:
        if self._state != self.CLOSED:
            logger.info("Circuit closed, endpoint recovered")
        self._state = self.CLOSED
        self._failures = 0
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == self.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != self.OPEN:
                logger.warning(f"Circuit opened after {self._failures} consecutive failure(s)")
            self._state = self.OPEN
            self._opened_at = self._clock()
            self._trial_in_flight = False

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Run ``func`` through the breaker.

        Raises:
            CircuitOpenError: The circuit refused the call
        """
        if not self.can_execute():
            raise CircuitOpenError(f"Circuit is {self._state}")
        if self._state == self.HALF_OPEN:
            self._trial_in_flight = True

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        self._state = self.CLOSED
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False
