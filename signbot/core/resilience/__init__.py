"""
Resilience primitives.

Components:
-----------
- **circuit_breaker.py**: CircuitBreaker state machine and CircuitBreakerRegistry
- **retry.py**: RetryExecutor / RetryPolicy (tenacity, backoff with jitter)
- **classification.py**: Default retryable-error classifier
- **timeout.py**: with_timeout and TimeoutBudget
- **rate_limiter.py**: Bounded fixed-window RateLimiter
- **idempotency.py**: Two-tier IdempotencyGuard with per-event fail policy
- **optimistic.py**: OptimisticUpdater for versioned session state
- **dead_letter.py**: DeadLetterQueue for events whose handler failed
"""

from signbot.core.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    ExecutionDecision,
)
from signbot.core.resilience.classification import is_retryable_error
from signbot.core.resilience.dead_letter import DeadLetterEntry, DeadLetterQueue, DeadLetterReport
from signbot.core.resilience.idempotency import (
    FailPolicy,
    IdempotencyGuard,
    IdempotencyPolicy,
    IdempotencyResult,
)
from signbot.core.resilience.optimistic import OptimisticUpdater
from signbot.core.resilience.rate_limiter import RateLimitDecision, RateLimiter
from signbot.core.resilience.retry import RetryExecutor, RetryPolicy, backoff_delay
from signbot.core.resilience.timeout import TimeoutBudget, with_timeout

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "ExecutionDecision",
    "is_retryable_error",
    "DeadLetterEntry",
    "DeadLetterQueue",
    "DeadLetterReport",
    "FailPolicy",
    "IdempotencyGuard",
    "IdempotencyPolicy",
    "IdempotencyResult",
    "OptimisticUpdater",
    "RateLimitDecision",
    "RateLimiter",
    "RetryExecutor",
    "RetryPolicy",
    "backoff_delay",
    "TimeoutBudget",
    "with_timeout",
]
