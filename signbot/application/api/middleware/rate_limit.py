"""
Rate Limiting Middleware
========================

Per-client-IP admission control in front of the admin and health routes.

Webhook routes are not limited here: every Meta delivery arrives from a
small pool of Meta addresses, so an IP limit would throttle all users at
once. WhatsApp messages are limited per sender inside WebhookService.

CLIENT IDENTIFICATION:
----------------------
Behind a load balancer the peer address is the proxy, so the client is
taken from the first ``X-Forwarded-For`` hop, then ``X-Real-IP``, then the
socket peer.

RESPONSES:
----------
Admitted requests get ``X-RateLimit-Limit`` / ``-Remaining`` / ``-Reset``.
Rejected requests get a 429 with ``Retry-After`` (whole seconds, rounded
up) and a RATE_LIMIT_EXCEEDED audit event.
"""

import math
from collections.abc import Callable, Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from signbot.core.config.constants import (
    HEADER_FORWARDED_FOR,
    HEADER_RATE_LIMIT_LIMIT,
    HEADER_RATE_LIMIT_REMAINING,
    HEADER_RATE_LIMIT_RESET,
    HEADER_REAL_IP,
    HEADER_RETRY_AFTER,
    AuditEventType,
    Severity,
)
from signbot.core.exceptions import RateLimitExceededError
from signbot.core.logging.logger import get_logger

logger = get_logger(__name__)


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get(HEADER_FORWARDED_FOR)
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get(HEADER_REAL_IP)
    if real_ip:
        return real_ip.strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Args:
        app: The ASGI application
        path_prefixes: Only paths starting with one of these are limited
    """

    def __init__(self, app, path_prefixes: Sequence[str] = ("/admin", "/health")):
        super().__init__(app)
        self.path_prefixes = tuple(path_prefixes)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not request.url.path.startswith(self.path_prefixes):
            return await call_next(request)

        context = request.app.state.resilience
        client_ip = get_client_ip(request)
        decision = context.rate_limiter.check_and_consume(client_ip)
        headers = {
            HEADER_RATE_LIMIT_LIMIT: str(decision.limit),
            HEADER_RATE_LIMIT_REMAINING: str(decision.remaining),
            HEADER_RATE_LIMIT_RESET: str(math.ceil(decision.reset_after)),
        }

        if not decision.allowed:
            retry_after = max(1, math.ceil(decision.reset_after))
            context.audit.record(
                AuditEventType.RATE_LIMIT_EXCEEDED,
                Severity.WARNING,
                client_ip=client_ip,
                path=request.url.path,
            )
            error = RateLimitExceededError(reset_after=decision.reset_after)
            headers[HEADER_RETRY_AFTER] = str(retry_after)
            body = error.to_dict()
            body["retry_after"] = retry_after
            return JSONResponse(status_code=error.status_code, content=body, headers=headers)

        response = await call_next(request)
        response.headers.update(headers)
        return response
