"""
Timeout Exceptions
"""

from signbot.core.exceptions.base import SignBotError


class OperationTimeoutError(SignBotError):
    """Raised when an operation exceeds its time budget."""

    code = "TIMEOUT"
    status_code = 504
    retryable = True

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"{operation} timed out after {timeout:g}s",
            details={"operation": operation, "timeout": timeout},
        )
