"""Observability: request correlation and audit events."""
