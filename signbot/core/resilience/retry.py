"""
Retry with exponential backoff and jitter, gated by a circuit breaker.

Built on tenacity's ``AsyncRetrying``. Each attempt:

1. consults the policy's breaker (if any). A rejection is raised straight
   away with no backoff and does not use up an attempt;
2. runs the operation, optionally under a per-attempt timeout;
3. on a retryable failure with attempts left, sleeps
   ``min(base * 2**a, max) + U(0, 0.25 * min(base * 2**a, max))`` and tries again.

The breaker only hears about the final outcome: one ``record_success`` or
one ``record_failure`` per logical call, never one per retry, so retries do
not skew the failure threshold.
"""

import asyncio
import inspect
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from signbot.core.config.constants import RETRY_JITTER_RATIO
from signbot.core.config.settings import Settings
from signbot.core.exceptions import CircuitBreakerOpenError
from signbot.core.logging.logger import get_logger
from signbot.core.resilience.circuit_breaker import CircuitBreaker
from signbot.core.resilience.classification import is_retryable_error
from signbot.core.resilience.timeout import with_timeout

logger = get_logger(__name__)

T = TypeVar("T")

RetryListener = Callable[[BaseException, int, float], None]


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    rng: random.Random | None = None,
) -> float:
    """
    Delay before retrying after attempt ``attempt`` (0-based).

    Never exceeds ``max_delay * (1 + RETRY_JITTER_RATIO)``.
    """
    capped = min(base_delay * (2 ** attempt), max_delay)
    jitter = (rng or random).uniform(0, RETRY_JITTER_RATIO * capped)
    return capped + jitter


class wait_backoff_with_jitter(wait_base):
    """tenacity wait strategy wrapping ``backoff_delay``."""

    def __init__(self, base_delay: float, max_delay: float, rng: random.Random | None = None):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        return backoff_delay(retry_state.attempt_number - 1, self.base_delay, self.max_delay, self.rng)


@dataclass(frozen=True)
class RetryPolicy:
    """
    How to retry one kind of call.

    Attributes:
        max_attempts: Total attempts, including the first
        base_delay: First backoff delay in seconds
        max_delay: Backoff cap in seconds, before jitter
        is_retryable: Classifier deciding whether a failure is worth retrying
        breaker: Gate consulted before every attempt
        timeout: Per-attempt timeout in seconds
        operation: Name used in logs and timeout errors
        on_retry: Called as ``on_retry(error, attempt_number, delay)`` before sleeping
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    breaker: CircuitBreaker | None = None
    timeout: float | None = None
    operation: str = "operation"
    on_retry: RetryListener | None = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "RetryPolicy":
        retry = settings.retry
        values = {
            "max_attempts": retry.RETRY_MAX_ATTEMPTS,
            "base_delay": retry.RETRY_BASE_DELAY,
            "max_delay": retry.RETRY_MAX_DELAY,
            **overrides,
        }
        return cls(**values)

    def with_breaker(self, breaker: CircuitBreaker | None) -> "RetryPolicy":
        return replace(self, breaker=breaker)


class RetryExecutor:
    """
    Runs operations under a RetryPolicy.

    Args:
        sleep: Awaitable sleep used between attempts (injectable for tests)
        rng: Random source for jitter
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._sleep = sleep
        self._rng = rng

    async def execute_with_retry(self, fn: Callable[[], Awaitable[T] | T], policy: RetryPolicy) -> T:
        """
        STAGE-RT.1: Retry loop

        Raises:
            CircuitBreakerOpenError: The breaker rejected an attempt
            Exception: The last failure, once it is terminal
        """
        breaker = policy.breaker

        def should_retry(exc: BaseException) -> bool:
            return not isinstance(exc, CircuitBreakerOpenError) and policy.is_retryable(exc)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_backoff_with_jitter(policy.base_delay, policy.max_delay, self._rng),
            retry=retry_if_exception(should_retry),
            before_sleep=self._before_sleep(policy),
            sleep=self._sleep,
            reraise=True,
        )

        rejection: CircuitBreakerOpenError | None = None
        try:
            async for attempt in retrying:
                if breaker is not None:
                    decision = breaker.can_execute()
                    if not decision.allowed:
                        rejection = CircuitBreakerOpenError(breaker.name, decision.retry_after, decision.reason)
                        break
                with attempt:
                    result = await self._invoke(fn, policy)
        except Exception as e:
            if breaker is not None:
                breaker.record_failure(e)
            logger.warning(
                "Operation failed",
                stage="RT.3",
                operation=policy.operation,
                error_type=type(e).__name__,
                retryable=should_retry(e),
            )
            raise

        if rejection is not None:
            logger.info(
                "Operation rejected by open circuit",
                stage="RT.0",
                operation=policy.operation,
                breaker=rejection.name,
                retry_after=rejection.retry_after,
            )
            raise rejection

        if breaker is not None:
            breaker.record_success()
        return result

    async def _invoke(self, fn: Callable[[], Awaitable[T] | T], policy: RetryPolicy) -> T:
        result = fn()
        if not inspect.isawaitable(result):
            return result
        if policy.timeout is not None:
            return await with_timeout(result, policy.timeout, policy.operation)
        return await result

    @staticmethod
    def _before_sleep(policy: RetryPolicy) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "Retrying operation",
                stage="RT.2",
                operation=policy.operation,
                attempt=retry_state.attempt_number,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error_type=type(exc).__name__ if exc else None,
            )
            if policy.on_retry is not None and exc is not None:
                policy.on_retry(exc, retry_state.attempt_number, delay)

        return before_sleep
