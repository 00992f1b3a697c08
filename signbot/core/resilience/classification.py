"""
Error classification for retries.

Classification happens once, at the retry boundary. An error is retryable
when retrying it can plausibly succeed: dropped or refused connections,
timeouts, throttling (HTTP 429) and server-side failures (HTTP 5xx).
Everything else (4xx, validation, programming errors) is terminal.
"""

import httpx
from redis import exceptions as redis_exceptions

from signbot.core.config.constants import (
    HTTP_TOO_MANY_REQUESTS,
    RETRYABLE_ERRNOS,
    RETRYABLE_ERROR_CODES,
)
from signbot.core.exceptions import (
    CircuitBreakerOpenError,
    ExternalServiceError,
    OperationTimeoutError,
    SignBotError,
    StoreUnavailableError,
)

_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionResetError,
    ConnectionRefusedError,
    ConnectionAbortedError,
    BrokenPipeError,
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    redis_exceptions.ConnectionError,
    redis_exceptions.TimeoutError,
)


def is_retryable_status(status: int | None) -> bool:
    return status is not None and (status == HTTP_TOO_MANY_REQUESTS or 500 <= status <= 599)


def get_status_code(exc: BaseException) -> int | None:
    """HTTP status carried by a client exception, if any."""
    if isinstance(exc, ExternalServiceError):
        return exc.upstream_status
    if isinstance(exc, SignBotError):
        return None

    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "status", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_error(exc: BaseException) -> bool:
    """
    Default retry classifier.

    Never retries an open circuit: the breaker already decided the
    dependency is unavailable.
    """
    if isinstance(exc, CircuitBreakerOpenError):
        return False
    if isinstance(exc, (OperationTimeoutError, StoreUnavailableError)):
        return True
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    if isinstance(exc, OSError) and exc.errno in RETRYABLE_ERRNOS:
        return True

    if not isinstance(exc, SignBotError):
        code = getattr(exc, "code", None)
        if isinstance(code, str) and code in RETRYABLE_ERROR_CODES:
            return True

    return is_retryable_status(get_status_code(exc))
