"""Database models for the notification service."""

from notification_service.models.enums import (
    Channel,
    DispatchStatus,
    NotificationKind,
    NotificationState,
    Priority,
)
from notification_service.models.idempotency import IdempotencyKey
from notification_service.models.notification import Notification

__all__ = [
    "Notification",
    "IdempotencyKey",
    "NotificationKind",
    "NotificationState",
    "Priority",
    "Channel",
    "DispatchStatus",
]
