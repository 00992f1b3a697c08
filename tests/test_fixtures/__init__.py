"""
Test Fixtures Package

Shared test utilities and helpers for consistent testing across all modules.
"""

from .webhook_factory import DocuSignPayloadFactory, WhatsAppPayloadFactory

__all__ = ["WhatsAppPayloadFactory", "DocuSignPayloadFactory"]
