"""
External Service Exceptions
"""

from signbot.core.exceptions.base import SignBotError


class ExternalServiceError(SignBotError):
    """
    Terminal failure of an outbound dependency call.

    Raised when an error is not retryable or retries are exhausted. The
    original exception, when known, is kept on ``original`` and chained.

    ``upstream_status`` is the dependency's HTTP status (if any). It is kept
    apart from ``status_code``, which is what this service answers with.
    """

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        service: str,
        original: BaseException | None = None,
        upstream_status: int | None = None,
        details: dict | None = None,
    ):
        self.service = service
        self.original = original
        self.upstream_status = upstream_status
        merged = {"service": service, **(details or {})}
        if upstream_status is not None:
            merged["upstream_status"] = upstream_status
        if original is not None:
            merged.setdefault("original_error", original.__class__.__name__)
        super().__init__(message, details=merged)
