"""
Admin Routes
============

Operational endpoints for on-call use:

- ``GET  /admin/circuit-breakers``: state and counters of every breaker
- ``POST /admin/circuit-breakers/reset``: force every breaker to CLOSED
- ``POST /admin/circuit-breakers/{name}/reset``: force one breaker to CLOSED
- ``GET  /admin/rate-limit``: limiter configuration and rejection counters
- ``POST /admin/dead-letters/retry``: redeliver every due dead letter now

A manual reset skips the half-open trial phase, so it is audited as
CIRCUIT_RESET with the breaker name. When ``ADMIN_API_KEY`` is set every
route requires a matching ``X-Admin-Key`` header.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from signbot.application.api.dependencies import ResilienceContextDep, WebhookServiceDep, verify_admin_access
from signbot.application.api.models.admin import (
    CircuitBreakerStats,
    CircuitBreakerStatsResponse,
    DeadLetterRetryResponse,
    RateLimitStatsResponse,
    ResetResponse,
)
from signbot.core.config.constants import AuditEventType, Severity
from signbot.core.logging.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(verify_admin_access)])


# ============================================================================
# CIRCUIT BREAKERS
# ============================================================================


@router.get("/circuit-breakers", response_model=CircuitBreakerStatsResponse)
async def get_circuit_breaker_statistics(context: ResilienceContextDep) -> CircuitBreakerStatsResponse:
    stats = context.breakers.get_all_stats()
    return CircuitBreakerStatsResponse(
        circuit_breakers={name: CircuitBreakerStats(**values) for name, values in stats.items()}
    )


@router.post("/circuit-breakers/reset", response_model=ResetResponse)
async def reset_all_circuit_breakers(context: ResilienceContextDep) -> ResetResponse:
    names = context.breakers.names()
    context.breakers.reset_all()
    for name in names:
        context.audit.record(AuditEventType.CIRCUIT_RESET, Severity.WARNING, breaker=name)
    logger.warning("All circuit breakers reset", stage="ADM.1", breakers=names)
    return ResetResponse(reset=names)


@router.post("/circuit-breakers/{name}/reset", response_model=ResetResponse)
async def reset_circuit_breaker(name: str, context: ResilienceContextDep) -> ResetResponse:
    if not context.breakers.reset(name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown circuit breaker: {name}")
    context.audit.record(AuditEventType.CIRCUIT_RESET, Severity.WARNING, breaker=name)
    logger.warning("Circuit breaker reset", stage="ADM.1", breaker=name)
    return ResetResponse(reset=[name])


# ============================================================================
# RATE LIMITING
# ============================================================================


@router.get("/rate-limit", response_model=RateLimitStatsResponse)
async def get_rate_limit_statistics(context: ResilienceContextDep) -> RateLimitStatsResponse:
    return RateLimitStatsResponse(**context.rate_limiter.get_stats())


# ============================================================================
# DEAD LETTERS
# ============================================================================


@router.post("/dead-letters/retry", response_model=DeadLetterRetryResponse)
async def retry_dead_letters(service: WebhookServiceDep) -> DeadLetterRetryResponse:
    report = await service.retry_dead_letters()
    logger.info("Manual dead letter retry", stage="ADM.2", **report.to_dict())
    return DeadLetterRetryResponse(**report.to_dict())
