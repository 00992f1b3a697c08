"""
Error Handling
==============

Two layers turn exceptions into JSON responses:

1. ``register_exception_handlers`` maps every SignBotError to its own
   ``status_code`` (circuit open 503, timeout 504, conflict 409, rate limit
   429, external failure 502) with the error's ``to_dict()`` as the body.
2. ``ErrorHandlingMiddleware`` is the last line of defence for anything
   else: it logs the full stack trace server-side and answers with a
   generic 500 that does not leak internals.
"""

import traceback
from collections.abc import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from signbot.core.config.constants import HEADER_CORRELATION_ID, HEADER_RETRY_AFTER
from signbot.core.exceptions import CircuitBreakerOpenError, RateLimitExceededError, SignBotError
from signbot.core.logging.logger import get_logger
from signbot.core.observability.correlation import get_correlation_id

logger = get_logger(__name__)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Catch-all for exceptions that no exception handler claimed.

    Args:
        app: The ASGI application
        include_traceback: Add the stack trace to the body (development only)
    """

    def __init__(self, app, include_traceback: bool = False):
        super().__init__(app)
        self.include_traceback = include_traceback

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(
                "Unhandled exception in request",
                stage="HTTP.9",
                method=request.method,
                path=request.url.path,
                error_type=type(e).__name__,
                exc_info=True,
            )
            correlation_id = get_correlation_id()
            body = {
                "error_type": "InternalServerError",
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred while processing your request",
                "correlation_id": correlation_id,
            }
            if self.include_traceback:
                body["traceback"] = traceback.format_exc()
            headers = {HEADER_CORRELATION_ID: correlation_id} if correlation_id else None
            return JSONResponse(status_code=500, content=body, headers=headers)


async def signbot_exception_handler(request: Request, exc: SignBotError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request failed",
        stage="HTTP.8",
        path=request.url.path,
        error_type=type(exc).__name__,
        code=exc.code,
        status_code=exc.status_code,
    )

    headers: dict[str, str] = {}
    if exc.correlation_id:
        headers[HEADER_CORRELATION_ID] = exc.correlation_id
    retry_after = None
    if isinstance(exc, CircuitBreakerOpenError):
        retry_after = exc.retry_after
    elif isinstance(exc, RateLimitExceededError):
        retry_after = exc.reset_after
    if retry_after is not None:
        headers[HEADER_RETRY_AFTER] = str(max(1, round(retry_after)))

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SignBotError, signbot_exception_handler)
