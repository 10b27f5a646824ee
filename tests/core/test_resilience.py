"""
Tests for core/resilience.py - Retry policy with attempt and wall-clock budgets.
"""
import asyncio

import pytest


class FakeClock:
    """Monotonic clock advanced only by the policy's sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def flaky(failures, error_factory=lambda n: ConnectionError(f"attempt {n}"), result="ok"):
    """Coroutine function failing ``failures`` times before returning ``result``."""
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error_factory(calls["count"])
        return result

    operation.calls = calls
    return operation


# =============================================================================
# RetryConfig Tests
# =============================================================================

class TestRetryConfig:
    """Tests for RetryConfig validation."""

    def test_defaults(self):
        from core.resilience import RetryConfig

        config = RetryConfig()

        assert config.max_attempts == 5
        assert config.max_elapsed == 60.0
        assert config.attempt_timeout == 10.0
        assert config.jitter is True

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"base_delay": -1.0},
        {"base_delay": 5.0, "max_delay": 1.0},
        {"max_elapsed": 0},
        {"attempt_timeout": -2.0},
    ])
    def test_invalid_values_rejected(self, kwargs):
        from core.resilience import RetryConfig

        with pytest.raises(ValueError):
            RetryConfig(**kwargs)


# =============================================================================
# Backoff Tests
# =============================================================================

class TestCalculateDelay:
    """Tests for exponential backoff."""

    def test_exponential_without_jitter(self):
        from core.resilience import RetryConfig, RetryPolicy

        policy = RetryPolicy(RetryConfig(base_delay=1.0, max_delay=10.0, jitter=False))

        assert policy.calculate_delay(0) == 1.0
        assert policy.calculate_delay(1) == 2.0
        assert policy.calculate_delay(2) == 4.0
        assert policy.calculate_delay(6) == 10.0

    def test_jitter_stays_within_bounds(self):
        from core.resilience import RetryConfig, RetryPolicy

        policy = RetryPolicy(RetryConfig(base_delay=2.0, max_delay=10.0, jitter=True))

        for _ in range(50):
            delay = policy.calculate_delay(1)
            assert 2.0 <= delay <= 6.0
            assert policy.calculate_delay(8) <= 10.0


# =============================================================================
# Execute Tests
# =============================================================================

class TestRetryPolicyExecute:
    """Tests for RetryPolicy.execute()."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        from core.resilience import RetryConfig, RetryPolicy

        clock = FakeClock()
        policy = RetryPolicy(RetryConfig(jitter=False), sleep=clock.sleep, clock=clock)
        operation = flaky(0, result=42)

        assert await policy.execute(operation) == 42
        assert operation.calls["count"] == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        from core.resilience import RetryConfig, RetryPolicy

        clock = FakeClock()
        retries = []
        policy = RetryPolicy(
            RetryConfig(max_attempts=5, base_delay=1.0, max_delay=10.0, jitter=False),
            sleep=clock.sleep,
            clock=clock,
        )
        operation = flaky(2)

        result = await policy.execute(
            operation,
            on_retry=lambda attempt, delay, error: retries.append((attempt, delay, str(error))),
        )

        assert result == "ok"
        assert operation.calls["count"] == 3
        assert clock.sleeps == [1.0, 2.0]
        assert retries == [(1, 1.0, "attempt 1"), (2, 2.0, "attempt 2")]

    @pytest.mark.asyncio
    async def test_attempt_budget_exhausted(self):
        from core.errors import RetryExhaustedError
        from core.resilience import RetryConfig, RetryPolicy

        clock = FakeClock()
        policy = RetryPolicy(
            RetryConfig(max_attempts=3, base_delay=0.5, max_delay=1.0, jitter=False),
            sleep=clock.sleep,
            clock=clock,
        )
        operation = flaky(10)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.execute(operation, operation_name="db.connect")

        assert exc_info.value.attempts == 3
        assert operation.calls["count"] == 3
        assert str(exc_info.value.cause) == "attempt 3"
        # No sleep after the final attempt
        assert clock.sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_wall_clock_budget_exhausted(self):
        from core.errors import RetryExhaustedError
        from core.resilience import RetryConfig, RetryPolicy

        clock = FakeClock()
        policy = RetryPolicy(
            RetryConfig(
                max_attempts=10,
                base_delay=1.0,
                max_delay=1.0,
                jitter=False,
                max_elapsed=2.5,
            ),
            sleep=clock.sleep,
            clock=clock,
        )

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.execute(flaky(100))

        # t=0, t=1, t=2 attempted; next 1s delay would overrun the 2.5s budget
        assert exc_info.value.attempts == 3
        assert exc_info.value.elapsed_seconds == 2.0

    @pytest.mark.asyncio
    async def test_non_retryable_raised_unchanged(self):
        from core.resilience import RetryConfig, RetryPolicy

        clock = FakeClock()
        policy = RetryPolicy(
            RetryConfig(retryable_exceptions={ConnectionError}, jitter=False),
            sleep=clock.sleep,
            clock=clock,
        )
        operation = flaky(5, error_factory=lambda n: ValueError("bad url"))

        with pytest.raises(ValueError, match="bad url"):
            await policy.execute(operation)

        assert operation.calls["count"] == 1

    def test_explicit_non_retryable_wins(self):
        from core.resilience import RetryConfig, RetryPolicy

        policy = RetryPolicy(RetryConfig(
            retryable_exceptions={Exception},
            non_retryable_exceptions={PermissionError},
        ))

        assert policy.is_retryable(ConnectionError()) is True
        assert policy.is_retryable(PermissionError()) is False

    @pytest.mark.asyncio
    async def test_attempt_timeout_counts_as_failed_attempt(self):
        from core.errors import RetryExhaustedError
        from core.resilience import RetryConfig, RetryPolicy

        calls = []

        async def hangs():
            calls.append(1)
            await asyncio.sleep(5)

        policy = RetryPolicy(RetryConfig(
            max_attempts=2,
            base_delay=0.0,
            max_delay=0.0,
            jitter=False,
            attempt_timeout=0.05,
        ))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.execute(hangs)

        assert len(calls) == 2
        assert isinstance(exc_info.value.cause, asyncio.TimeoutError)
