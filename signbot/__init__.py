"""
SignBot resilience core.

Coordination primitives for a WhatsApp customer-service and document-signing
service: circuit breakers, retries, idempotent webhook intake, optimistic
session updates, rate limiting and request correlation.
"""

__version__ = "1.0.0"
