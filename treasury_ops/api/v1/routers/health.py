"""Health check endpoints."""

import time

from fastapi import APIRouter, Depends
import structlog

from treasury_ops.api.v1.dependencies import get_container
from treasury_ops.api.v1.schemas import HealthStatus
from treasury_ops.container import ServiceContainer
from treasury_ops.errors import StoreError

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/v1", tags=["health"])

_started_at = time.monotonic()


@router.get("/health", response_model=HealthStatus)
async def health_check(container: ServiceContainer = Depends(get_container)) -> HealthStatus:
    """Health check endpoint for load balancers and monitoring."""
    dependencies = {
        "bank_probe": "configured" if container.settings.bank_probe_url else "static",
    }

    tasks_total = 0
    try:
        store_health = await container.repositories.health_check()
        dependencies["database"] = store_health["database"]
        tasks_total = store_health["task_count"]
    except StoreError as e:
        logger.warning("Entity store health check failed", error=str(e))
        dependencies["database"] = "unavailable"

    overall_status = "healthy" if dependencies["database"] == "healthy" else "degraded"

    return HealthStatus(
        status=overall_status,
        service="treasury-ops-api",
        version=container.settings.api_version,
        uptime_seconds=round(time.monotonic() - _started_at, 3),
        dependencies=dependencies,
        tasks_total=tasks_total,
        running_tasks=container.worker.running,
        open_streams=container.registry.connection_count,
    )
