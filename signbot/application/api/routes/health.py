"""
Health Check Routes
===================

- ``GET /health``: readiness view. Pings the durable store and lists the
  state of every circuit breaker created so far. Answers 200 when the
  store is reachable and no breaker is open, 503 otherwise, so a load
  balancer can take a degraded instance out of rotation.
- ``GET /health/live``: liveness. No dependency checks; if the process can
  answer, it is alive.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Response, status
from pydantic import BaseModel, Field

from signbot.application.api.dependencies import ResilienceContextDep

router = APIRouter(prefix="/health", tags=["Health"])


class StoreHealth(BaseModel):
    backend: str
    reachable: bool


class HealthResponse(BaseModel):
    status: str = Field(..., description="healthy or degraded")
    timestamp: str
    store: StoreHealth
    circuit_breakers: dict[str, str] = Field(default_factory=dict)
    audit_pending: int = Field(default=0, ge=0)


class LivenessResponse(BaseModel):
    status: str
    timestamp: str


@router.get("", response_model=HealthResponse)
async def health_check(context: ResilienceContextDep, response: Response) -> HealthResponse:
    report = await context.health()
    if report["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(timestamp=datetime.now(timezone.utc).isoformat(), **report)


@router.get("/live", response_model=LivenessResponse)
async def liveness_check() -> LivenessResponse:
    return LivenessResponse(status="alive", timestamp=datetime.now(timezone.utc).isoformat())
