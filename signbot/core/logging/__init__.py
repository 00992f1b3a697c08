"""Structured logging (structlog)."""
