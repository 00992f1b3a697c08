#!/usr/bin/env python3
"""
System-Wide Constants and Enumerations

This module defines all constants, enums, and magic numbers used throughout
SignBot. Centralizing these values prevents hardcoding and makes
configuration changes easier.

Units: all durations are in seconds unless the name says otherwise.
"""

import errno
from enum import Enum

# ============================================================================
# Circuit Breaker States
# ============================================================================


class CircuitState(str, Enum):
    """
    Circuit breaker states.

    CLOSED: Normal operation, calls pass through
    OPEN: Failing dependency, calls are rejected until the cooldown ends
    HALF_OPEN: Cooldown over, trial calls decide whether to close or reopen
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# ============================================================================
# External Dependencies
# ============================================================================


class Dependency(str, Enum):
    """Names of outbound dependencies guarded by circuit breakers."""

    WHATSAPP = "whatsapp"
    DOCUSIGN = "docusign"
    GEMINI = "gemini"
    AZURE_OPENAI = "azure-openai"
    AZURE_VISION = "azure-vision"
    BLOB_STORAGE = "blob-storage"
    DATABASE = "database"


# Breaker presets: (failure_threshold, success_threshold, open_duration)
# Messaging fails fast and cools down longer. The database cooldown must
# exceed its 30s request timeout, otherwise slow queries look like an outage.
BREAKER_PRESETS: dict[str, tuple[int, int, float]] = {
    Dependency.WHATSAPP.value: (3, 1, 60.0),
    Dependency.DOCUSIGN.value: (3, 1, 60.0),
    Dependency.GEMINI.value: (5, 2, 30.0),
    Dependency.AZURE_OPENAI.value: (5, 2, 30.0),
    Dependency.AZURE_VISION.value: (5, 2, 30.0),
    Dependency.BLOB_STORAGE.value: (5, 2, 30.0),
    Dependency.DATABASE.value: (3, 1, 35.0),
}

# Per-attempt timeouts for outbound calls
DEFAULT_TIMEOUTS: dict[str, float] = {
    Dependency.WHATSAPP.value: 30.0,
    Dependency.DOCUSIGN.value: 30.0,
    Dependency.GEMINI.value: 60.0,
    Dependency.AZURE_OPENAI.value: 60.0,
    Dependency.AZURE_VISION.value: 30.0,
    Dependency.BLOB_STORAGE.value: 60.0,
    Dependency.DATABASE.value: 30.0,
}
DEFAULT_EXTERNAL_TIMEOUT = 30.0

# Whole-request budget for chained operations
REQUEST_TIMEOUT_BUDGET = 240.0
TIMEOUT_MIN_THRESHOLD = 1.0


# ============================================================================
# Retry Classification
# ============================================================================

RETRYABLE_ERROR_CODES = frozenset(
    {
        "ECONNABORTED",
        "ETIMEDOUT",
        "ECONNRESET",
        "ECONNREFUSED",
        "EPIPE",
        "ENETUNREACH",
    }
)

RETRYABLE_ERRNOS = frozenset(
    {
        errno.ECONNABORTED,
        errno.ETIMEDOUT,
        errno.ECONNRESET,
        errno.ECONNREFUSED,
        errno.EPIPE,
        errno.ENETUNREACH,
    }
)

HTTP_TOO_MANY_REQUESTS = 429

# Jitter adds up to this fraction of the capped delay
RETRY_JITTER_RATIO = 0.25


# ============================================================================
# Idempotency
# ============================================================================


class EventType(str, Enum):
    """Inbound event classes with a declared idempotency fail policy."""

    MESSAGE = "message"
    SURVEY_RESPONSE = "survey_response"
    DOCUSIGN_EVENT = "docusign_event"


# Button ids that mark a reply as a survey answer (rating buttons on the
# satisfaction template).
SURVEY_BUTTON_PREFIXES = ("btn_rating_",)


# ============================================================================
# Audit
# ============================================================================


class Severity(str, Enum):
    """Audit event severity."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditEventType(str, Enum):
    """Audit event types recorded by the coordination layer."""

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    DUPLICATE_EVENT = "DUPLICATE_EVENT"
    IDEMPOTENCY_FAIL_OPEN = "IDEMPOTENCY_FAIL_OPEN"
    IDEMPOTENCY_FAIL_CLOSED = "IDEMPOTENCY_FAIL_CLOSED"
    CIRCUIT_OPENED = "CIRCUIT_OPENED"
    CIRCUIT_CLOSED = "CIRCUIT_CLOSED"
    CIRCUIT_RESET = "CIRCUIT_RESET"
    SESSION_CONFLICT = "SESSION_CONFLICT"
    EVENT_PROCESSING_FAILED = "EVENT_PROCESSING_FAILED"
    DEAD_LETTER_EXHAUSTED = "DEAD_LETTER_EXHAUSTED"
    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"


# ============================================================================
# Redis Key Prefixes
# ============================================================================

REDIS_KEY_IDEMPOTENCY = "signbot:idem"
REDIS_KEY_SESSION = "signbot:session"
REDIS_KEY_AUDIT = "signbot:audit"
REDIS_KEY_DEAD_LETTER = "signbot:dlq"

# Newest audit events kept in the Redis list
AUDIT_LIST_MAX_LENGTH = 100000


# ============================================================================
# HTTP Headers
# ============================================================================

HEADER_CORRELATION_ID = "X-Correlation-ID"
HEADER_REQUEST_ID = "X-Request-ID"
HEADER_FORWARDED_FOR = "X-Forwarded-For"
HEADER_REAL_IP = "X-Real-IP"
HEADER_RATE_LIMIT_LIMIT = "X-RateLimit-Limit"
HEADER_RATE_LIMIT_REMAINING = "X-RateLimit-Remaining"
HEADER_RATE_LIMIT_RESET = "X-RateLimit-Reset"
HEADER_RETRY_AFTER = "Retry-After"
HEADER_HUB_SIGNATURE = "X-Hub-Signature-256"
HUB_SIGNATURE_PREFIX = "sha256="


# ============================================================================
# Dead Letters
# ============================================================================


class DeadLetterStatus(str, Enum):
    PENDING = "PENDING"
    FAILED = "FAILED"


# Delay before each redelivery attempt: 1, 5 and 15 minutes
DEAD_LETTER_RETRY_DELAYS = (60.0, 300.0, 900.0)
