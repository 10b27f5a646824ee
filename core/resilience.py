"""
testgen-backend - Resilience Patterns

Retry policy with bounded exponential backoff. The budget is limited both
by attempt count and by total wall-clock time, so a caller can always
reason about the worst case before giving up.

Attempts are traced with OpenTelemetry spans.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Set, Type, TypeVar

from opentelemetry import trace

from core.errors import RetryExhaustedError

T = TypeVar("T")

RetryCallback = Callable[[int, float, BaseException], None]

tracer = trace.get_tracer(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry policy."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True
    # Total wall-clock budget across all attempts and sleeps; None = unbounded
    max_elapsed: Optional[float] = 60.0
    # Upper bound for a single attempt; None = unbounded
    attempt_timeout: Optional[float] = 10.0
    retryable_exceptions: Set[Type[BaseException]] = field(
        default_factory=lambda: {Exception}
    )
    non_retryable_exceptions: Set[Type[BaseException]] = field(default_factory=set)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.max_elapsed is not None and self.max_elapsed <= 0:
            raise ValueError("max_elapsed must be > 0")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be > 0")


class RetryPolicy:
    """
    Configurable retry policy with exponential backoff.

    Features:
    - Exponential backoff with optional jitter
    - Maximum delay cap
    - Attempt-count and wall-clock budgets
    - Per-attempt timeout
    - OpenTelemetry tracing

    Usage:
        policy = RetryPolicy(RetryConfig(max_attempts=5))
        result = await policy.execute(connect, operation_name="db.connect")
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._clock = clock

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after the given zero-based attempt number."""
        delay = min(
            self.config.base_delay * (self.config.exponential_base ** attempt),
            self.config.max_delay,
        )

        if self.config.jitter:
            delay *= (0.5 + random.random())

        return min(delay, self.config.max_delay)

    def is_retryable(self, exception: BaseException) -> bool:
        """Check if exception should trigger retry."""
        exc_type = type(exception)

        if any(issubclass(exc_type, t) for t in self.config.non_retryable_exceptions):
            return False

        return any(issubclass(exc_type, t) for t in self.config.retryable_exceptions)

    def _remaining(self, started: float) -> Optional[float]:
        if self.config.max_elapsed is None:
            return None
        return self.config.max_elapsed - (self._clock() - started)

    def _attempt_timeout(self, remaining: Optional[float]) -> Optional[float]:
        timeouts = [t for t in (self.config.attempt_timeout, remaining) if t is not None]
        return min(timeouts) if timeouts else None

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or the budget runs out.

        Args:
            operation: Zero-argument coroutine function to call per attempt
            operation_name: Name used for tracing spans
            on_retry: Called as ``on_retry(attempt, delay, error)`` before
                each backoff sleep

        Raises:
            RetryExhaustedError: attempts or wall-clock budget exhausted;
                the last failure is attached as ``cause``
            Exception: the first non-retryable failure, unchanged
        """
        started = self._clock()
        last_error: Optional[BaseException] = None
        attempt = 0

        while attempt < self.config.max_attempts:
            remaining = self._remaining(started)
            if remaining is not None and remaining <= 0:
                break
            attempt += 1

            with tracer.start_as_current_span(f"retry.{operation_name}") as span:
                span.set_attribute("retry.attempt", attempt)
                span.set_attribute("retry.max_attempts", self.config.max_attempts)

                try:
                    timeout = self._attempt_timeout(remaining)
                    if timeout is None:
                        return await operation()
                    return await asyncio.wait_for(operation(), timeout=timeout)
                except Exception as e:
                    last_error = e
                    span.set_attribute("retry.exception", type(e).__name__)

                    if not self.is_retryable(e):
                        raise

            if attempt >= self.config.max_attempts:
                break

            delay = self.calculate_delay(attempt - 1)
            remaining = self._remaining(started)
            if remaining is not None and delay >= remaining:
                break

            if on_retry is not None:
                on_retry(attempt, delay, last_error)
            await self._sleep(delay)

        elapsed = self._clock() - started
        raise RetryExhaustedError(
            message=f"{operation_name} failed after {attempt} attempt(s) in {elapsed:.1f}s",
            attempts=attempt,
            elapsed_seconds=elapsed,
            cause=last_error,
        )


__all__ = ["RetryConfig", "RetryPolicy", "RetryCallback"]
