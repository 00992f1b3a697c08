"""
Circuit Breaker Exceptions

All exceptions related to circuit breaker operations.
"""

from signbot.core.exceptions.base import SignBotError


class CircuitBreakerError(SignBotError):
    """Base exception for circuit breaker errors."""

    code = "CIRCUIT_BREAKER_ERROR"
    status_code = 503


class CircuitBreakerOpenError(CircuitBreakerError):
    """
    Raised when a circuit breaker is open (fail fast).

    The dependency is considered unavailable until ``retry_after`` seconds
    have passed, at which point the breaker admits trial calls again.
    Callers recover by backing off or falling back.
    """

    code = "CIRCUIT_OPEN"
    retryable = True

    def __init__(self, name: str, retry_after: float | None = None, reason: str | None = None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            reason or f"Circuit open for {name}",
            details={"breaker": name, "retry_after": retry_after},
        )
