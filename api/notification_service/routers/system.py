"""System-producer routes, authenticated with an API key."""

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from notification_service.auth.dependencies import require_system_key
from notification_service.middleware.rate_limit import limiter, system_create_limit
from notification_service.runtime import Runtime, get_notification_service, get_runtime
from notification_service.schemas.envelope import success_response
from notification_service.schemas.notifications import SystemNotificationCreate
from notification_service.services.notifications import NotificationService

router = APIRouter(prefix="/api/system", tags=["System"])


@router.post("/notifications", status_code=status.HTTP_201_CREATED)
@limiter.limit(system_create_limit)
async def create_system_notification(
    request: Request,
    payload: SystemNotificationCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=255),
    producer: str = Depends(require_system_key),
    service: NotificationService = Depends(get_notification_service),
) -> JSONResponse:
    """
    Create a notification for any recipient.

    ``userId`` is mandatory. Otherwise identical to the user create.
    """
    result = await service.create_for_system(producer, payload, idempotency_key)
    return success_response(
        request,
        "Notification created successfully",
        result.data,
        status_code=status.HTTP_201_CREATED,
        replayed=result.replayed,
    )


@router.get("/metrics", status_code=status.HTTP_200_OK)
async def get_metrics(
    request: Request,
    _producer: str = Depends(require_system_key),
    runtime: Runtime = Depends(get_runtime),
) -> JSONResponse:
    """Delivery, cache and realtime counters for this worker."""
    data = {
        "delivery": runtime.metrics.snapshot(),
        "cache": runtime.cache.stats(),
        "realtime": {
            "recipients": runtime.registry.recipient_count,
            "sessions": runtime.registry.session_count,
        },
        "engine": {
            "inFlight": runtime.engine.in_flight,
            "scheduled": len(runtime.engine.scheduler),
        },
    }
    return success_response(request, "Metrics retrieved successfully", data)
