"""Health check endpoints, used for liveness and readiness probes."""

from fastapi import APIRouter

from mirrorcache.api.v1.dependencies import ReplicationCacheDep
from mirrorcache.schemas.health import HealthResponse, ReadinessResponse

router = APIRouter()


@router.get("", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Return simple ok status for liveness."""
    return HealthResponse()


@router.get("/ready", response_model=ReadinessResponse)
def readiness_check(cache: ReplicationCacheDep) -> ReadinessResponse:
    """Return 200 once the replication cache is started (503 otherwise)."""
    return ReadinessResponse(cache_enabled=cache.options.enabled, entities=len(cache.refs))
