"""
Rate Limiting Exceptions
"""

from signbot.core.exceptions.base import SignBotError


class RateLimitError(SignBotError):
    """Base exception for rate limiting errors."""

    code = "RATE_LIMIT_ERROR"
    status_code = 429


class RateLimitExceededError(RateLimitError):
    """
    Raised when admission is denied for a key.

    Carries only the reset estimate, never the key itself, so that client
    addresses and phone numbers stay out of error payloads.
    """

    code = "RATE_LIMIT_EXCEEDED"
    retryable = True

    def __init__(self, reset_after: float, message: str = "Rate limit exceeded"):
        self.reset_after = reset_after
        super().__init__(message, details={"reset_after": round(reset_after, 3)})
