"""Recipient-facing notification routes."""

from typing import Literal

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse

from notification_service.auth.dependencies import get_current_recipient
from notification_service.middleware.rate_limit import create_limit, limiter
from notification_service.models.enums import NotificationKind, NotificationState, Priority
from notification_service.runtime import get_notification_service
from notification_service.schemas.envelope import success_response
from notification_service.schemas.notifications import (
    ListQuery,
    MarkAllReadRequest,
    MarkReadRequest,
    UserNotificationCreate,
)
from notification_service.services.notifications import NotificationService

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])

SortParam = Literal["createdAt", "updatedAt", "priority", "type", "created_at", "updated_at"]


def list_query(
    type: NotificationKind | None = Query(default=None, description="Filter by notification type"),
    read: bool | None = Query(default=None, description="Filter by read flag"),
    status_filter: NotificationState | None = Query(
        default=None, alias="status", description="Filter by delivery state"
    ),
    priority: Priority | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100, description="Items per page"),
    offset: int = Query(default=0, ge=0),
    sort: SortParam = Query(default="createdAt"),
    order: Literal["asc", "desc"] = Query(default="desc"),
    include_expired: bool = Query(default=False, alias="includeExpired"),
) -> ListQuery:
    return ListQuery(
        type=type,
        read=read,
        status=status_filter,
        priority=priority,
        limit=limit,
        offset=offset,
        sort=sort,
        order=order,
        include_expired=include_expired,
    )


# --- List ---


@router.get("", status_code=status.HTTP_200_OK)
async def list_notifications(
    request: Request,
    query: ListQuery = Depends(list_query),
    recipient: str = Depends(get_current_recipient),
    service: NotificationService = Depends(get_notification_service),
) -> JSONResponse:
    """
    List the caller's notifications.

    Ordered by ``sort``/``order`` (default newest first); ``pagination.total``
    counts every match, not just this page.
    """
    result = await service.list(recipient, query)
    return success_response(request, "Notifications retrieved successfully", result)


# --- Unread Count ---


@router.get("/unread-count", status_code=status.HTTP_200_OK)
async def get_unread_count(
    request: Request,
    type: NotificationKind | None = Query(default=None),
    recipient: str = Depends(get_current_recipient),
    service: NotificationService = Depends(get_notification_service),
) -> JSONResponse:
    """Count unread, unexpired notifications, optionally of one type."""
    count = await service.unread_count(recipient, type)
    return success_response(request, "Unread count retrieved successfully", {"count": count})


# --- Grouped ---


@router.get("/grouped", status_code=status.HTTP_200_OK)
async def get_grouped(
    request: Request,
    include_read: bool = Query(default=False, alias="includeRead"),
    limit: int = Query(default=10, ge=1, le=50, description="Number of types to return"),
    recipient: str = Depends(get_current_recipient),
    service: NotificationService = Depends(get_notification_service),
) -> JSONResponse:
    """Notifications grouped by type, newest group first."""
    groups = await service.grouped(recipient, include_read=include_read, limit=limit)
    return success_response(request, "Grouped notifications retrieved successfully", groups)


# --- Mark All Read ---


@router.patch("/mark-all-read", status_code=status.HTTP_200_OK)
async def mark_all_read(
    request: Request,
    type: NotificationKind | None = Query(default=None),
    body: MarkAllReadRequest | None = None,
    recipient: str = Depends(get_current_recipient),
    service: NotificationService = Depends(get_notification_service),
) -> JSONResponse:
    """Mark every unread notification (optionally of one type) as read."""
    kind = type or (body.type if body else None)
    modified = await service.mark_all_read(recipient, kind)
    return success_response(
        request, "All notifications marked as read", {"modifiedCount": modified}
    )


# --- By Type ---


@router.get("/types/{kind}", status_code=status.HTTP_200_OK)
async def list_by_type(
    request: Request,
    kind: NotificationKind,
    read: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    include_expired: bool = Query(default=False, alias="includeExpired"),
    recipient: str = Depends(get_current_recipient),
    service: NotificationService = Depends(get_notification_service),
) -> JSONResponse:
    """List the caller's notifications of one type, newest first."""
    query = ListQuery(read=read, limit=limit, offset=offset, include_expired=include_expired)
    result = await service.list(recipient, query, kind=kind)
    return success_response(request, "Notifications retrieved successfully", result)


# --- Create ---


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(create_limit)
async def create_notification(
    request: Request,
    payload: UserNotificationCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=255),
    recipient: str = Depends(get_current_recipient),
    service: NotificationService = Depends(get_notification_service),
) -> JSONResponse:
    """
    Create a notification for the caller.

    Delivery runs in the background; adapter failures never fail this call.
    A repeated ``Idempotency-Key`` returns the first response unchanged.
    """
    result = await service.create_for_recipient(recipient, payload, idempotency_key)
    return success_response(
        request,
        "Notification created successfully",
        result.data,
        status_code=status.HTTP_201_CREATED,
        replayed=result.replayed,
    )


# --- Single Notification ---


@router.get("/{notification_id}", status_code=status.HTTP_200_OK)
async def get_notification(
    request: Request,
    notification_id: str,
    include_expired: bool = Query(default=False, alias="includeExpired"),
    recipient: str = Depends(get_current_recipient),
    service: NotificationService = Depends(get_notification_service),
) -> JSONResponse:
    """Fetch one notification owned by the caller."""
    data = await service.get(notification_id, recipient, include_expired=include_expired)
    return success_response(request, "Notification retrieved successfully", data)


@router.patch("/{notification_id}/read", status_code=status.HTTP_200_OK)
async def mark_read(
    request: Request,
    notification_id: str,
    body: MarkReadRequest | None = None,
    recipient: str = Depends(get_current_recipient),
    service: NotificationService = Depends(get_notification_service),
) -> JSONResponse:
    """Set or clear the read flag."""
    read = body.read if body else True
    data = await service.mark_read(notification_id, recipient, read)
    return success_response(
        request, f"Notification marked as {'read' if read else 'unread'}", data
    )


@router.delete("/{notification_id}", status_code=status.HTTP_200_OK)
async def delete_notification(
    request: Request,
    notification_id: str,
    recipient: str = Depends(get_current_recipient),
    service: NotificationService = Depends(get_notification_service),
) -> JSONResponse:
    """Hard-delete a notification owned by the caller."""
    await service.delete(notification_id, recipient)
    return success_response(request, "Notification deleted successfully")
