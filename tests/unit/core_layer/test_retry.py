"""
Unit Tests for RetryExecutor

Covers backoff bounds, classifier-driven retries, the breaker gate before
each attempt, single breaker recording per logical call, and per-attempt
timeouts. Sleeps are recorded instead of awaited.
"""

import asyncio
import random

import httpx
import pytest

from signbot.core.config.constants import CircuitState
from signbot.core.exceptions import CircuitBreakerOpenError, OperationTimeoutError
from signbot.core.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from signbot.core.resilience.retry import RetryExecutor, RetryPolicy, backoff_delay


class Flaky:
    """Callable failing with ``errors`` in order, then returning ``result``."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def executor(recording_sleep):
    return RetryExecutor(sleep=recording_sleep, rng=random.Random(7))


@pytest.fixture
def breaker(fake_clock):
    return CircuitBreaker(
        "docusign",
        CircuitBreakerConfig(failure_threshold=3, success_threshold=1, open_duration=60),
        clock=fake_clock,
    )


@pytest.mark.unit
class TestBackoffDelay:
    @pytest.mark.parametrize("attempt", range(8))
    def test_delay_within_jitter_bounds(self, attempt):
        rng = random.Random(attempt)
        capped = min(0.5 * 2**attempt, 10.0)

        delay = backoff_delay(attempt, 0.5, 10.0, rng)

        assert capped <= delay <= capped * 1.25

    def test_delay_never_exceeds_cap_plus_jitter(self):
        rng = random.Random(1)
        assert max(backoff_delay(30, 0.5, 10.0, rng) for _ in range(200)) <= 12.5


@pytest.mark.unit
class TestRetryExecutor:
    async def test_success_first_try_does_not_sleep(self, executor, recording_sleep):
        fn = Flaky()

        assert await executor.execute_with_retry(fn, RetryPolicy()) == "ok"
        assert fn.calls == 1
        assert recording_sleep.delays == []

    async def test_retryable_errors_are_retried(self, executor, recording_sleep):
        fn = Flaky(ConnectionResetError(), httpx.ConnectTimeout("slow"))

        result = await executor.execute_with_retry(fn, RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=1))

        assert result == "ok"
        assert fn.calls == 3
        assert len(recording_sleep.delays) == 2
        assert 0.1 <= recording_sleep.delays[0] <= 0.125
        assert 0.2 <= recording_sleep.delays[1] <= 0.25

    async def test_non_retryable_error_fails_immediately(self, executor):
        fn = Flaky(ValueError("bad input"))

        with pytest.raises(ValueError):
            await executor.execute_with_retry(fn, RetryPolicy(max_attempts=5))
        assert fn.calls == 1

    async def test_exhausted_attempts_reraise_last_error(self, executor):
        fn = Flaky(ConnectionResetError("1"), ConnectionResetError("2"), ConnectionResetError("3"))

        with pytest.raises(ConnectionResetError, match="3"):
            await executor.execute_with_retry(fn, RetryPolicy(max_attempts=3))
        assert fn.calls == 3

    async def test_custom_classifier(self, executor):
        fn = Flaky(KeyError("retry me"))
        policy = RetryPolicy(is_retryable=lambda e: isinstance(e, KeyError))

        assert await executor.execute_with_retry(fn, policy) == "ok"

    async def test_on_retry_listener(self, executor):
        seen = []
        fn = Flaky(ConnectionResetError())
        policy = RetryPolicy(on_retry=lambda error, attempt, delay: seen.append((type(error), attempt)))

        await executor.execute_with_retry(fn, policy)

        assert seen == [(ConnectionResetError, 1)]

    async def test_sync_callable_supported(self, executor):
        assert await executor.execute_with_retry(lambda: 42, RetryPolicy()) == 42

    async def test_per_attempt_timeout_is_retried(self, recording_sleep):
        executor = RetryExecutor(sleep=recording_sleep)
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "done"

        policy = RetryPolicy(max_attempts=2, timeout=0.01, operation="gemini")

        assert await executor.execute_with_retry(slow_then_fast, policy) == "done"
        assert calls == 2

    async def test_timeout_error_surfaces_when_attempts_run_out(self, recording_sleep):
        executor = RetryExecutor(sleep=recording_sleep)

        async def never_finishes():
            await asyncio.sleep(1)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await executor.execute_with_retry(never_finishes, RetryPolicy(max_attempts=1, timeout=0.01, operation="db"))
        assert exc_info.value.operation == "db"


@pytest.mark.unit
class TestRetryWithBreaker:
    async def test_open_breaker_rejects_without_calling(self, executor, breaker, recording_sleep):
        for _ in range(3):
            breaker.record_failure()
        fn = Flaky()

        with pytest.raises(CircuitBreakerOpenError):
            await executor.execute_with_retry(fn, RetryPolicy().with_breaker(breaker))

        assert fn.calls == 0
        assert recording_sleep.delays == []

    async def test_breaker_records_one_failure_per_logical_call(self, executor, breaker):
        fn = Flaky(ConnectionResetError(), ConnectionResetError(), ConnectionResetError())

        with pytest.raises(ConnectionResetError):
            await executor.execute_with_retry(fn, RetryPolicy(max_attempts=3).with_breaker(breaker))

        assert fn.calls == 3
        assert breaker.consecutive_failures == 1
        assert breaker.state == CircuitState.CLOSED

    async def test_breaker_records_success_after_retries(self, executor, breaker):
        breaker.record_failure()
        fn = Flaky(ConnectionResetError())

        await executor.execute_with_retry(fn, RetryPolicy().with_breaker(breaker))

        assert breaker.consecutive_failures == 0
        assert breaker.stats.successful_calls == 1

    async def test_three_failed_calls_open_the_breaker(self, executor, breaker):
        policy = RetryPolicy(max_attempts=1).with_breaker(breaker)
        for _ in range(3):
            with pytest.raises(ValueError):
                await executor.execute_with_retry(Flaky(ValueError()), policy)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            await executor.execute_with_retry(Flaky(), policy)

    async def test_open_circuit_error_is_never_retried(self, executor):
        fn = Flaky(CircuitBreakerOpenError("whatsapp", 30.0))

        with pytest.raises(CircuitBreakerOpenError):
            await executor.execute_with_retry(fn, RetryPolicy(max_attempts=3))
        assert fn.calls == 1


@pytest.mark.unit
class TestRetryPolicy:
    def test_from_settings(self, settings):
        policy = RetryPolicy.from_settings(settings, operation="whatsapp")

        assert policy.max_attempts == settings.RETRY_MAX_ATTEMPTS
        assert policy.base_delay == settings.RETRY_BASE_DELAY
        assert policy.operation == "whatsapp"

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
