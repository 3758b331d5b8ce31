"""Liveness and dependency health."""

import logging
import time

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from notification_service.errors import ServiceError
from notification_service.runtime import Runtime, get_runtime
from notification_service.schemas.envelope import error_response, success_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["System"])


@router.get("/health")
async def health_check(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> JSONResponse:
    """
    Health check endpoint.

    Returns 200 when the store answers, 503 otherwise. No authentication.
    """
    data = {
        "status": "healthy",
        "environment": runtime.settings.environment,
        "cache": {"enabled": runtime.cache.enabled},
        "realtime": {"sessions": runtime.registry.session_count},
        "delivery": {"accepting": runtime.engine.accepting, "inFlight": runtime.engine.in_flight},
    }
    try:
        data["store"] = {"status": "up", **(await runtime.store.health())}
    except ServiceError as exc:
        logger.error("Health check store query failed: %s", exc)
        data["status"] = "degraded"
        data["store"] = {"status": "down"}
        return error_response(
            request,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "SERVICE_DEGRADED",
            "Service degraded",
            data=data,
        )
    return success_response(request, "Service healthy", data)


@router.get("/health/live")
async def liveness(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> JSONResponse:
    """The process is up and serving requests. Touches no dependency."""
    data = {
        "status": "alive",
        "uptimeSeconds": round(time.time() - runtime.metrics.started_at, 1),
    }
    return success_response(request, "Service alive", data)


@router.get("/health/ready")
async def readiness(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> JSONResponse:
    """
    Ready to take traffic: the store answers and the engine accepts work.

    Returns 503 with the failing dependency otherwise.
    """
    dependencies = {
        "store": "connected",
        "delivery": "accepting" if runtime.engine.accepting else "stopped",
    }
    try:
        await runtime.store.health()
    except ServiceError as exc:
        logger.error("Readiness check store query failed: %s", exc)
        dependencies["store"] = "disconnected"

    data = {"status": "ready", "dependencies": dependencies}
    if dependencies["store"] != "connected" or not runtime.engine.accepting:
        data["status"] = "not_ready"
        return error_response(
            request,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "NOT_READY",
            "Service not ready",
            data=data,
        )
    return success_response(request, "Service ready", data)
