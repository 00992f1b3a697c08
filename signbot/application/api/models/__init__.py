"""
API request and response models.
"""

from signbot.application.api.models.admin import (
    CircuitBreakerStatsResponse,
    DeadLetterRetryResponse,
    RateLimitStatsResponse,
    ResetResponse,
)
from signbot.application.api.models.webhooks import DocuSignWebhook, WebhookAck, WhatsAppWebhook

__all__ = [
    "CircuitBreakerStatsResponse",
    "DeadLetterRetryResponse",
    "RateLimitStatsResponse",
    "ResetResponse",
    "DocuSignWebhook",
    "WebhookAck",
    "WhatsAppWebhook",
]
