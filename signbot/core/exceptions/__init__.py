"""
Exception Module

Structured exception hierarchy for SignBot.
All exceptions are organized by theme.

Module Structure:
-----------------
- **base.py**: SignBotError base class + ConfigurationError
- **circuit_breaker.py**: Circuit breaker exceptions
- **rate_limit.py**: Rate limiting exceptions
- **concurrency.py**: Optimistic concurrency conflicts
- **timeout.py**: Operation timeouts
- **external_service.py**: Terminal outbound call failures
- **store.py**: Durable store failures

Usage:
------
```python
from signbot.core.exceptions import CircuitBreakerOpenError, ConcurrencyError
```
"""

# Base exception
from signbot.core.exceptions.base import ConfigurationError, SignBotError

# Circuit breaker exceptions
from signbot.core.exceptions.circuit_breaker import (
    CircuitBreakerError,
    CircuitBreakerOpenError,
)

# Concurrency exceptions
from signbot.core.exceptions.concurrency import ConcurrencyError

# External service exceptions
from signbot.core.exceptions.external_service import ExternalServiceError

# Rate limit exceptions
from signbot.core.exceptions.rate_limit import RateLimitError, RateLimitExceededError

# Store exceptions
from signbot.core.exceptions.store import StoreError, StoreUnavailableError

# Timeout exceptions
from signbot.core.exceptions.timeout import OperationTimeoutError

__all__ = [
    # Base
    "SignBotError",
    "ConfigurationError",
    # Circuit Breaker
    "CircuitBreakerError",
    "CircuitBreakerOpenError",
    # Concurrency
    "ConcurrencyError",
    # External Service
    "ExternalServiceError",
    # Rate Limit
    "RateLimitError",
    "RateLimitExceededError",
    # Store
    "StoreError",
    "StoreUnavailableError",
    # Timeout
    "OperationTimeoutError",
]
