"""
Base Exception Class

This module contains ONLY the base exception class that all other exceptions inherit from.
All specialized exceptions are in their respective themed modules.
"""

from typing import Any

from signbot.core.observability.correlation import get_correlation_id


class SignBotError(Exception):
    """
    Base exception for all SignBot errors.

    All custom exceptions inherit from this class to enable:
    - Consistent error handling at the HTTP boundary
    - Correlation ID propagation into error payloads
    - Structured error logging

    Class attributes describe how the error surfaces to callers:
        code: Stable machine-readable error code
        status_code: HTTP status used by admin/API endpoints
        retryable: Whether a fresh attempt may succeed

    Attributes:
        message: Error message
        correlation_id: Correlation ID of the request that raised it (if any)
        details: Additional error details (dict)

    Example:
        raise ExternalServiceError(
            "WhatsApp send failed",
            service="whatsapp",
            details={"status_code": 400}
        )
    """

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.correlation_id = correlation_id if correlation_id is not None else get_correlation_id()
        self.details = (details or {}).copy()
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging/API responses.

        Returns:
            Dict with error_type, code, message, correlation_id and details
        """
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "details": self.details,
        }

    def with_context(self, **context) -> "SignBotError":
        """
        Add additional context to the error details.

        Returns:
            Self (for method chaining)
        """
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        details_str = f", details={self.details}" if self.details else ""
        cid_str = f", correlation_id='{self.correlation_id}'" if self.correlation_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{cid_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        correlation_id: str | None = None,
        **details,
    ) -> "SignBotError":
        """
        Create an error of this class from another exception.

        Useful for wrapping third-party exceptions (redis, httpx) with context.

        Example:
            >>> try:
            ...     await client.ping()
            ... except redis.ConnectionError as e:
            ...     raise StoreUnavailableError.from_exception(e, operation="ping")
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details,
        }
        return cls(error_message, correlation_id=correlation_id, details=error_details)


class ConfigurationError(SignBotError):
    """Raised when configuration is invalid or missing."""

    code = "CONFIGURATION_ERROR"
