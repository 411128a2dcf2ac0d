"""
Health check and monitoring endpoints.
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from audit_service.config import Settings
from audit_service.models import HealthStatus
from audit_service.routers.operations import get_app_settings, get_store
from audit_service.store import AuditStore

router = APIRouter(tags=["monitoring"])

# Track application start time
START_TIME = time.time()


def _lifecycle_state(request: Request) -> str:
    lifecycle = request.app.state.lifecycle
    return lifecycle.state.value if lifecycle is not None else "unmanaged"


def _ingesting(request: Request) -> bool:
    lifecycle = request.app.state.lifecycle
    return lifecycle is not None and lifecycle.ingesting


@router.get("/health", response_model=HealthStatus)
async def health_check(
    request: Request,
    store: AuditStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings)
):
    """
    Health check endpoint.

    Reports database connectivity, lifecycle state and whether records are
    being ingested. A service without an upstream subscription is still
    healthy: it keeps serving what is already stored.
    """
    db_healthy = await store.health_check()

    return HealthStatus(
        status="healthy" if db_healthy else "unhealthy",
        version=settings.app_version,
        lifecycle=_lifecycle_state(request),
        database="connected" if db_healthy else "disconnected",
        ingestion="running" if _ingesting(request) else "idle",
        uptime_seconds=time.time() - START_TIME,
        timestamp=datetime.now(timezone.utc)
    )


@router.get("/health/live")
async def liveness_check():
    """
    Kubernetes liveness probe.

    Simple check that the application is running.
    Does not check dependencies.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """
    Kubernetes readiness probe.

    Ready once the store and the listener are both up.
    """
    state = _lifecycle_state(request)

    if state != "ready":
        return Response(
            content=f'{{"status": "not ready", "lifecycle": "{state}"}}',
            status_code=503,
            media_type="application/json"
        )

    return {"status": "ready", "ingestion": "running" if _ingesting(request) else "idle"}


@router.get("/metrics")
async def metrics(settings: Settings = Depends(get_app_settings)):
    """
    Prometheus metrics endpoint.

    Returns ingestion counts, append latency and query latency in
    Prometheus text format.
    """
    if not settings.enable_metrics:
        return Response(status_code=404)

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
