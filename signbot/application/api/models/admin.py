"""
Admin API Response Models
=========================

Typed responses for the operational endpoints under ``/admin``.

Keeping these as Pydantic models (rather than returning raw dicts) means
the breaker and rate-limiter statistics show up with their real shape in
the OpenAPI docs, and a renamed stats key fails loudly in tests instead of
silently changing what dashboards receive.
"""

from pydantic import BaseModel, Field

from signbot.core.config.constants import CircuitState

# ============================================================================
# CIRCUIT BREAKERS
# ============================================================================


class CircuitBreakerConfigModel(BaseModel):
    failure_threshold: int = Field(..., ge=1)
    success_threshold: int = Field(..., ge=1)
    open_duration: float = Field(..., gt=0, description="Seconds spent OPEN before probing")


class CircuitBreakerStats(BaseModel):
    """
    Statistics for a single circuit breaker.

    OPERATIONAL USE:
    ----------------
    - state=open: dependency considered down, calls fail fast
    - retry_after: seconds until the next trial call is admitted
    - rejected_calls: how much traffic the open circuit has shed
    """

    name: str
    state: CircuitState = Field(..., description="Current circuit breaker state")
    consecutive_failures: int = Field(default=0, ge=0)
    consecutive_successes: int = Field(default=0, ge=0)
    retry_after: float | None = Field(default=None, ge=0, description="Seconds until half-open")
    total_calls: int = Field(default=0, ge=0)
    successful_calls: int = Field(default=0, ge=0)
    failed_calls: int = Field(default=0, ge=0)
    rejected_calls: int = Field(default=0, ge=0)
    last_state_change: str = Field(..., description="ISO 8601 timestamp of the last transition")
    config: CircuitBreakerConfigModel


class CircuitBreakerStatsResponse(BaseModel):
    circuit_breakers: dict[str, CircuitBreakerStats] = Field(
        default_factory=dict, description="Breaker statistics keyed by dependency name"
    )


class ResetResponse(BaseModel):
    reset: list[str] = Field(default_factory=list, description="Breakers forced back to CLOSED")


# ============================================================================
# RATE LIMITING
# ============================================================================


class RateLimitStatsResponse(BaseModel):
    limit: int = Field(..., ge=1, description="Requests admitted per window")
    window_seconds: float = Field(..., gt=0)
    tracked_keys: int = Field(..., ge=0)
    max_entries: int = Field(..., ge=1)
    rejected_requests: int = Field(default=0, ge=0)
    rejected_new_keys: int = Field(default=0, ge=0, description="New keys refused at capacity")
    sweeper_running: bool = False


# ============================================================================
# DEAD LETTERS
# ============================================================================


class DeadLetterRetryResponse(BaseModel):
    processed: int = Field(default=0, ge=0, description="Entries redelivered and removed")
    failed: int = Field(default=0, ge=0, description="Entries that failed again")
    permanently_failed: int = Field(default=0, ge=0, description="Entries that reached max retries")
