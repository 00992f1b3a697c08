"""
Request Correlation Context

Every inbound request runs inside a correlation scope. The scope holds a
correlation ID, the start time and a small attribute map, and is visible from
anywhere in the call tree (including everything the request awaits) without
passing it through function signatures.

Implementation: a single ``ContextVar``. asyncio copies the current context
into each new task, so concurrently interleaved requests never observe each
other's scope, while tasks spawned inside a request inherit it.

Usage:
    result = await run_with_context(handle_webhook, {"message_id": "wamid.1"})

    # anywhere below handle_webhook
    logger.info("sending reply", correlation_id=get_correlation_id())
"""

import inspect
import re
import secrets
import time
from collections.abc import Awaitable, Callable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from signbot.core.config.constants import HEADER_CORRELATION_ID, HEADER_REQUEST_ID

T = TypeVar("T")

_VALID_INBOUND_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


@dataclass
class CorrelationContext:
    """Ambient state for one logical request."""

    correlation_id: str
    start_time: float = field(default_factory=time.monotonic)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attrs: dict[str, Any] = field(default_factory=dict)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start_time) * 1000)


_current_context: ContextVar[CorrelationContext | None] = ContextVar(
    "correlation_context", default=None
)


def generate_correlation_id() -> str:
    """
    Generate a sortable correlation ID: ``YYYYMMDD-HHMMSS-XXXXXX`` (UTC).

    The suffix is six uppercase hex characters.
    """
    now = datetime.now(timezone.utc)
    return f"{now:%Y%m%d-%H%M%S}-{secrets.token_hex(3).upper()}"


def generate_short_id() -> str:
    """Short random ID for sub-operations within a request."""
    return secrets.token_hex(4).upper()


def context_from_headers(headers: Mapping[str, str]) -> str | None:
    """
    Extract a propagated correlation ID from inbound headers.

    Looks at ``x-correlation-id`` first, then ``x-request-id``. Values that
    are too long or contain unexpected characters are ignored so they cannot
    be used to inject content into logs.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in (HEADER_CORRELATION_ID.lower(), HEADER_REQUEST_ID.lower()):
        value = lowered.get(name)
        if value and _VALID_INBOUND_ID.match(value):
            return value
    return None


@contextmanager
def correlation_scope(correlation_id: str | None = None, **attrs: Any) -> Iterator[CorrelationContext]:
    """
    Establish a correlation context for the dynamic extent of a ``with`` block.

    Args:
        correlation_id: Propagated ID; a new one is generated when omitted
        **attrs: Initial context attributes

    Yields:
        The active CorrelationContext
    """
    ctx = CorrelationContext(correlation_id=correlation_id or generate_correlation_id(), attrs=dict(attrs))
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


async def run_with_context(
    fn: Callable[[], Awaitable[T] | T],
    initial_attrs: Mapping[str, Any] | None = None,
    correlation_id: str | None = None,
) -> T:
    """
    Run ``fn`` inside a fresh correlation context and return its result.

    ``fn`` may be a coroutine function or a plain callable.
    """
    with correlation_scope(correlation_id, **dict(initial_attrs or {})):
        result = fn()
        if inspect.isawaitable(result):
            result = await result
        return result


def get_context() -> CorrelationContext | None:
    return _current_context.get()


def get_correlation_id() -> str | None:
    """Correlation ID of the current request, or None outside any scope."""
    ctx = _current_context.get()
    return ctx.correlation_id if ctx else None


def get_context_attr(key: str, default: Any = None) -> Any:
    ctx = _current_context.get()
    if ctx is None:
        return default
    return ctx.attrs.get(key, default)


def set_context_attr(key: str, value: Any) -> bool:
    """
    Set an attribute on the current context in place.

    Returns:
        False when called outside a correlation scope (the value is dropped)
    """
    ctx = _current_context.get()
    if ctx is None:
        return False
    ctx.attrs[key] = value
    return True


def elapsed_ms() -> int | None:
    """Milliseconds since the current context was created."""
    ctx = _current_context.get()
    return ctx.elapsed_ms() if ctx else None
