"""
Concurrency Exceptions

Raised by versioned (compare-and-set) writes to shared session state.
"""

from signbot.core.exceptions.base import SignBotError


class ConcurrencyError(SignBotError):
    """
    Optimistic-lock conflict: the stored version advanced since it was read.

    Recoverable by re-reading the state and retrying the mutation.
    """

    code = "CONCURRENCY_CONFLICT"
    status_code = 409
    retryable = True

    def __init__(
        self,
        key: str,
        expected_version: int,
        actual_version: int | None = None,
        operation: str = "write_versioned",
    ):
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.operation = operation
        super().__init__(
            f"Version conflict during {operation}: expected {expected_version}, found {actual_version}",
            details={
                "expected_version": expected_version,
                "actual_version": actual_version,
                "operation": operation,
            },
        )
