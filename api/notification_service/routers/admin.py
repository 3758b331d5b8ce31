"""Operator routes: bulk sends, forced dispatch, retention, cache and reports.

Every route requires a system API key.
"""

import logging

from fastapi import APIRouter, Depends, Header, Path, Query, Request, status
from fastapi.responses import JSONResponse

from notification_service.auth.dependencies import require_system_key
from notification_service.middleware.rate_limit import limiter, system_create_limit
from notification_service.models.enums import Channel
from notification_service.runtime import get_admin_service
from notification_service.schemas.admin import (
    CacheClearRequest,
    CleanupRequest,
    MassNotificationCreate,
    TimeRange,
)
from notification_service.schemas.envelope import success_response
from notification_service.services.admin import AdminService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system", tags=["Admin"])


@router.post("/notifications/mass-send", status_code=status.HTTP_201_CREATED)
@limiter.limit(system_create_limit)
async def mass_send(
    request: Request,
    payload: MassNotificationCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=150),
    producer: str = Depends(require_system_key),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    """
    Send one notification to every user in ``targetUsers.userIds``.

    Each recipient gets its own record and its own delivery. The
    idempotency key is capped so the derived per-recipient keys still fit.
    """
    data = await admin.mass_send(producer, payload, idempotency_key)
    return success_response(
        request,
        "Mass notification initiated successfully",
        data,
        status_code=status.HTTP_201_CREATED,
    )


@router.post("/notifications/{notification_id}/force-send", status_code=status.HTTP_200_OK)
async def force_send(
    request: Request,
    notification_id: str,
    producer: str = Depends(require_system_key),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    """
    Dispatch a pending or sent notification's outstanding channels now.

    Read and failed notifications return 409.
    """
    data = await admin.force_send(notification_id)
    logger.info("Notification %s force-sent by %s", notification_id, producer)
    return success_response(request, "Notification resent successfully", data)


@router.get("/users/{user_id}/notifications", status_code=status.HTTP_200_OK)
async def list_user_notifications(
    request: Request,
    user_id: str = Path(..., min_length=1, max_length=100),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    _producer: str = Depends(require_system_key),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    data = await admin.recipient_notifications(user_id, limit, offset)
    return success_response(request, "User notifications retrieved successfully", data)


@router.post("/notifications/cleanup", status_code=status.HTTP_200_OK)
async def cleanup_notifications(
    request: Request,
    payload: CleanupRequest | None = None,
    _producer: str = Depends(require_system_key),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    """
    Delete notifications older than ``olderThanDays``.

    Defaults to a dry run that only reports how many would go.
    """
    payload = payload or CleanupRequest()
    data = await admin.cleanup(
        payload.older_than_days, keep_read=payload.keep_read, dry_run=payload.dry_run
    )
    message = "Cleanup simulated successfully" if payload.dry_run else "Cleanup completed successfully"
    return success_response(request, message, data)


@router.post("/cache/clear", status_code=status.HTTP_200_OK)
async def clear_cache(
    request: Request,
    payload: CacheClearRequest,
    producer: str = Depends(require_system_key),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    data = await admin.clear_cache(payload.user_id, payload.clear_all)
    logger.info(
        "Cache cleared by %s (userId=%s, clearAll=%s)", producer, payload.user_id, payload.clear_all
    )
    return success_response(request, "Cache cleared successfully", data)


@router.get("/stats", status_code=status.HTTP_200_OK)
async def get_stats(
    request: Request,
    _producer: str = Depends(require_system_key),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    data = await admin.stats()
    return success_response(request, "System statistics retrieved successfully", data)


@router.get("/delivery/stats", status_code=status.HTTP_200_OK)
async def get_delivery_stats(
    request: Request,
    time_range: TimeRange = Query(default="24h", alias="timeRange"),
    channel: Channel | None = Query(default=None),
    _producer: str = Depends(require_system_key),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    data = await admin.delivery_stats(time_range, channel)
    return success_response(request, "Delivery statistics retrieved successfully", data)


@router.get("/types/distribution", status_code=status.HTTP_200_OK)
async def get_type_distribution(
    request: Request,
    time_range: TimeRange = Query(default="7d", alias="timeRange"),
    user_id: str | None = Query(default=None, alias="userId", min_length=1, max_length=100),
    _producer: str = Depends(require_system_key),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    """Notification counts per type, most common first."""
    data = await admin.type_distribution(time_range, user_id)
    return success_response(request, "Type distribution retrieved successfully", data)
