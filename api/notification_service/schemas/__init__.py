"""Pydantic schemas for request validation and the response envelope."""

from notification_service.schemas.admin import (
    CacheClearRequest,
    CleanupRequest,
    MassNotificationCreate,
)
from notification_service.schemas.envelope import error_response, success_response
from notification_service.schemas.notifications import (
    ListQuery,
    MarkAllReadRequest,
    MarkReadRequest,
    NotificationCreateBase,
    SystemNotificationCreate,
    UserNotificationCreate,
)

__all__ = [
    "success_response",
    "error_response",
    "NotificationCreateBase",
    "UserNotificationCreate",
    "SystemNotificationCreate",
    "MarkReadRequest",
    "MarkAllReadRequest",
    "ListQuery",
    "MassNotificationCreate",
    "CleanupRequest",
    "CacheClearRequest",
]
