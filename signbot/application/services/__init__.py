"""
Application services.
"""

from signbot.application.services.webhook_service import (
    EventHandler,
    InboundEvent,
    LoggingEventHandler,
    WebhookService,
)

__all__ = ["EventHandler", "InboundEvent", "LoggingEventHandler", "WebhookService"]
