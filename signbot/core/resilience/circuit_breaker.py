"""
Circuit Breaker for Outbound Dependencies.

One breaker per dependency name (whatsapp, docusign, gemini, database, ...),
held by a CircuitBreakerRegistry owned by the application context.

MECHANISM OF ACTION:
-------------------
1.  **In-Process State**:
    Breaker state lives in memory and is per instance. In a multi-instance
    deployment each instance trips independently; accuracy is traded for not
    needing a shared coordination service.

2.  **State Transitions**:
    - **CLOSED**: Calls are allowed.
      - On Failure: consecutive failure counter increments.
      - On Success: consecutive failure counter resets to 0.
      - Threshold Reached: failures >= failure_threshold opens the circuit.

    - **OPEN**: Calls are rejected until ``next_attempt_at``.
      - The first ``can_execute()`` at or after ``next_attempt_at`` moves the
        breaker to HALF_OPEN and admits the call.
      - Failures reported while OPEN are ignored.

    - **HALF_OPEN**: Trial mode. Every call is admitted (no trial cap).
      - success_threshold consecutive successes close the circuit.
      - Any failure reopens it, with the failure counter cleared first.

3.  **No awaits inside state changes**:
    ``can_execute``, ``record_success`` and ``record_failure`` are plain
    synchronous methods. Under asyncio that makes each check-then-act atomic
    with respect to other coroutines.
"""

import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from signbot.core.config.constants import BREAKER_PRESETS, CircuitState
from signbot.core.config.settings import Settings, get_settings
from signbot.core.exceptions import CircuitBreakerOpenError
from signbot.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

StateChangeListener = Callable[[str, CircuitState, CircuitState], None]


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one breaker."""

    failure_threshold: int = 5
    success_threshold: int = 2
    open_duration: float = 30.0

    def __post_init__(self):
        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ValueError("breaker thresholds must be >= 1")
        if self.open_duration <= 0:
            raise ValueError("open_duration must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerConfig":
        cb = settings.circuit_breaker
        return cls(
            failure_threshold=cb.CB_FAILURE_THRESHOLD,
            success_threshold=cb.CB_SUCCESS_THRESHOLD,
            open_duration=cb.CB_OPEN_DURATION,
        )

    @classmethod
    def for_dependency(cls, name: str, settings: Settings | None = None) -> "CircuitBreakerConfig":
        """Preset for a known dependency, otherwise the configured defaults."""
        preset = BREAKER_PRESETS.get(name)
        if preset is not None:
            failure_threshold, success_threshold, open_duration = preset
            return cls(failure_threshold, success_threshold, open_duration)
        return cls.from_settings(settings or get_settings())


@dataclass(frozen=True)
class ExecutionDecision:
    """Result of ``CircuitBreaker.can_execute``."""

    allowed: bool
    reason: str | None = None
    retry_after: float | None = None


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0


class CircuitBreaker:
    """
    Three-state failure gate for a single dependency.

    Args:
        name: Dependency name
        config: Thresholds (defaults to CircuitBreakerConfig())
        clock: Monotonic time source in seconds, injectable for tests
        on_state_change: Called as ``listener(name, old_state, new_state)``
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeListener | None = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._next_attempt_at: float | None = None
        self._last_state_change = datetime.now(timezone.utc)
        self._stats = CircuitBreakerStats()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def consecutive_successes(self) -> int:
        return self._successes

    @property
    def next_attempt_at(self) -> float | None:
        return self._next_attempt_at

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    def can_execute(self) -> ExecutionDecision:
        """
        Decide whether a call may proceed.

        STAGE-CB.1: Gate check

        In OPEN, once the cooldown has elapsed this moves the breaker to
        HALF_OPEN as a side effect and admits the call.
        """
        self._stats.total_calls += 1

        if self._state == CircuitState.OPEN:
            now = self._clock()
            if self._next_attempt_at is not None and now < self._next_attempt_at:
                self._stats.rejected_calls += 1
                retry_after = self._next_attempt_at - now
                return ExecutionDecision(
                    allowed=False,
                    reason=f"Circuit open for {self.name}. Retry in {max(1, round(retry_after))}s",
                    retry_after=retry_after,
                )
            self._transition_to(CircuitState.HALF_OPEN)

        return ExecutionDecision(allowed=True)

    def record_success(self) -> None:
        """
        STAGE-CB.2: Success accounting
        """
        self._stats.successful_calls += 1

        if self._state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._failures = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        """
        STAGE-CB.3: Failure accounting

        Args:
            error: The failure being recorded, used for logging only
        """
        self._stats.failed_calls += 1
        error_type = type(error).__name__ if error is not None else None

        if self._state == CircuitState.HALF_OPEN:
            self._failures = 0
            logger.warning(
                "Circuit trial call failed, reopening",
                stage="CB.3",
                breaker=self.name,
                error_type=error_type,
            )
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            self._failures += 1
            logger.debug(
                "Circuit recorded failure",
                stage="CB.3",
                breaker=self.name,
                failures=self._failures,
                threshold=self.config.failure_threshold,
                error_type=error_type,
            )
            if self._failures >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    async def execute(
        self,
        fn: Callable[[], Awaitable[T] | T],
        fallback: Callable[[], Awaitable[T] | T] | None = None,
    ) -> T:
        """
        Run ``fn`` through the breaker.

        Rejected calls go to ``fallback`` when given, otherwise raise
        CircuitBreakerOpenError. Failures are recorded, then handed to
        ``fallback`` or re-raised.
        """
        decision = self.can_execute()
        if not decision.allowed:
            if fallback is not None:
                return await _maybe_await(fallback())
            raise CircuitBreakerOpenError(self.name, decision.retry_after, decision.reason)

        try:
            result = await _maybe_await(fn())
        except Exception as e:
            self.record_failure(e)
            if fallback is not None:
                return await _maybe_await(fallback())
            raise

        self.record_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED and clear its statistics."""
        self._transition_to(CircuitState.CLOSED)
        self._stats = CircuitBreakerStats()

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._failures,
            "consecutive_successes": self._successes,
            "retry_after": (
                max(0.0, self._next_attempt_at - self._clock())
                if self._state == CircuitState.OPEN and self._next_attempt_at is not None
                else None
            ),
            "total_calls": self._stats.total_calls,
            "successful_calls": self._stats.successful_calls,
            "failed_calls": self._stats.failed_calls,
            "rejected_calls": self._stats.rejected_calls,
            "last_state_change": self._last_state_change.isoformat(),
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "success_threshold": self.config.success_threshold,
                "open_duration": self.config.open_duration,
            },
        }

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._last_state_change = datetime.now(timezone.utc)

        if new_state == CircuitState.OPEN:
            self._next_attempt_at = self._clock() + self.config.open_duration
            self._successes = 0
        elif new_state == CircuitState.CLOSED:
            self._failures = 0
            self._successes = 0
            self._next_attempt_at = None
        elif new_state == CircuitState.HALF_OPEN:
            self._successes = 0

        if old_state == new_state:
            return

        log = logger.error if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit state changed",
            stage="CB.4",
            breaker=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
        )
        if self._on_state_change is not None:
            self._on_state_change(self.name, old_state, new_state)


# ============================================================================
# Registry
# ============================================================================


class CircuitBreakerRegistry:
    """
    Holds one CircuitBreaker per dependency name.

    Breakers are created lazily on first lookup and live as long as the
    registry. A config passed on a later lookup is ignored.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeListener | None = None,
    ):
        self._settings = settings or get_settings()
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                config or CircuitBreakerConfig.for_dependency(name, self._settings),
                clock=self._clock,
                on_state_change=self._on_state_change,
            )
            self._breakers[name] = breaker
            logger.debug("Circuit breaker created", stage="CB.0", breaker=name)
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def names(self) -> list[str]:
        return sorted(self._breakers)

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_stats() for name, breaker in sorted(self._breakers.items())}

    def reset(self, name: str) -> bool:
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value
