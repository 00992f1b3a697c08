"""
Correlation Middleware
======================

Opens a CorrelationContext for every request so that every log line and
audit event produced while handling it carries the same correlation id.

The id is taken from ``X-Correlation-ID`` (or ``X-Request-ID``) when the
caller sent a well-formed one, otherwise a fresh id is generated. It is
echoed back in the ``X-Correlation-ID`` response header.
"""

from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from signbot.core.config.constants import HEADER_CORRELATION_ID
from signbot.core.logging.logger import get_logger
from signbot.core.observability.correlation import context_from_headers, correlation_scope

logger = get_logger(__name__)


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        with correlation_scope(context_from_headers(request.headers), path=request.url.path) as ctx:
            response = await call_next(request)
            response.headers[HEADER_CORRELATION_ID] = ctx.correlation_id
            logger.debug(
                "Request completed",
                stage="HTTP.1",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            )
            return response
