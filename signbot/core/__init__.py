"""Core layer: configuration, exceptions, logging, observability and resilience primitives."""
