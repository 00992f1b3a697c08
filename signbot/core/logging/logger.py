#!/usr/bin/env python3
"""
Structured Logging Module using structlog

This module provides structured logging with:
- Correlation ID injection for request tracing
- Stage tags for execution flow
- JSON formatting for log aggregation
- Automatic PII redaction (emails, phone numbers, API keys)

Architectural Decision: structlog for production logging
- Context-aware logging with automatic field injection
- JSON output for log aggregation
"""

import logging
import re
import sys
from datetime import datetime, timezone

import structlog
from structlog.types import EventDict, WrappedLogger

from signbot.core.config.settings import get_settings
from signbot.core.observability.correlation import get_context

_EMAIL = re.compile(r"\b[\w.-]+@[\w.-]+\.\w+\b")
_API_KEY = re.compile(r"\b(?:sk-[a-zA-Z0-9]+|AIza[a-zA-Z0-9_-]+)\b")
# WhatsApp IDs are E.164 digits without "+", typically 11-15 long
_PHONE = re.compile(r"\+?\b\d{10,15}\b")


def add_correlation_id(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add correlation ID and request elapsed time from the ambient context.

    STAGE-L.1: Correlation ID injection
    """
    ctx = get_context()
    if ctx is not None:
        event_dict.setdefault("correlation_id", ctx.correlation_id)
        event_dict.setdefault("elapsed_ms", ctx.elapsed_ms())
    return event_dict


def add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO timestamp to log event.

    STAGE-L.2: Timestamp injection
    """
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def redact_text(text: str) -> str:
    text = _EMAIL.sub("[EMAIL]", text)
    text = _API_KEY.sub("[REDACTED]", text)
    return _PHONE.sub("[PHONE]", text)


def redact_pii(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact PII from the event message and string fields.

    STAGE-L.3: PII redaction

    Patterns redacted:
    - Email addresses → [EMAIL]
    - API keys (sk-..., AIza...) → [REDACTED]
    - Phone numbers → [PHONE]
    """
    for key, value in event_dict.items():
        if isinstance(value, str) and key not in ("correlation_id", "timestamp", "level"):
            event_dict[key] = redact_text(value)
    return event_dict


def add_log_level_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Uppercase the log level.

    STAGE-L.4: Log level injection
    """
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Setup structured logging with structlog.

    STAGE-L: Logging initialization

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
    """
    settings = get_settings()

    log_level = log_level or settings.logging.LOG_LEVEL
    log_format = log_format or settings.logging.LOG_FORMAT

    logging.basicConfig(
        format="%(message)s", stream=sys.stdout, level=getattr(logging, log_level.upper())
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_correlation_id,
            add_timestamp,
            structlog.stdlib.add_log_level,
            add_log_level_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_pii,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("message", key="value", stage="CB.1")
    """
    return structlog.get_logger(name)
