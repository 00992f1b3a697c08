"""
Durable Store Exceptions
"""

from signbot.core.exceptions.base import SignBotError


class StoreError(SignBotError):
    """Base exception for durable store errors."""

    code = "STORE_ERROR"
    status_code = 503


class StoreUnavailableError(StoreError):
    """Raised when the durable store cannot be reached or a command fails."""

    code = "STORE_UNAVAILABLE"
    retryable = True
