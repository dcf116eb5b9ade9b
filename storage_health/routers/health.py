"""
Health check endpoints for service monitoring.

Provides /healthz endpoints for load balancers and orchestrators to verify
the service is running and its dependencies are reachable.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..db import get_pool_stats, ping
from ..services.health_monitor import HealthMonitorService, get_health_monitor
from ..services.upload_queue import UploadQueue, get_upload_queue
from ..utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get(
    "/healthz",
    response_model=Dict[str, str],
    status_code=status.HTTP_200_OK,
    summary="Health check",
    description="Returns service health status and version information",
)
async def health_check(
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> Dict[str, str]:
    """
    Health check endpoint for monitoring and load balancer probes.

    Example response:
        {"status": "ok", "version": "0.1.0", "environment": "production"}
    """
    logger.debug("Health check requested")
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.app_env,
    }


@router.get(
    "/healthz/live",
    response_model=Dict[str, str],
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    include_in_schema=False,
)
async def liveness_probe() -> Dict[str, str]:
    """Returns 200 if the service is alive, regardless of dependencies."""
    return {"status": "alive"}


@router.get(
    "/healthz/ready",
    summary="Readiness probe",
    include_in_schema=False,
)
async def readiness_probe(
    queue: UploadQueue = Depends(get_upload_queue),  # noqa: B008
    monitor: HealthMonitorService = Depends(get_health_monitor),  # noqa: B008
) -> Any:
    """
    Readiness probe: database reachable, plus queue and monitor statistics.

    Returns 503 when the database cannot be reached.
    """
    try:
        latency_ms = await ping()
        pool = await get_pool_stats()
    except Exception as e:
        logger.error("Readiness check failed", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"ready": False, "database": {"ok": False, "error": type(e).__name__}},
        )

    return {
        "ready": True,
        "database": {"ok": True, "latency_ms": round(latency_ms, 2), "pool": pool},
        "upload_queue": queue.stats(),
        "health_monitor": monitor.get_service_stats(),
    }
