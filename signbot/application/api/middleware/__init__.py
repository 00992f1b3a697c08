"""
HTTP middleware.
"""

from signbot.application.api.middleware.correlation import CorrelationMiddleware
from signbot.application.api.middleware.error_handler import (
    ErrorHandlingMiddleware,
    register_exception_handlers,
)
from signbot.application.api.middleware.rate_limit import RateLimitMiddleware, get_client_ip

__all__ = [
    "CorrelationMiddleware",
    "ErrorHandlingMiddleware",
    "RateLimitMiddleware",
    "get_client_ip",
    "register_exception_handlers",
]
