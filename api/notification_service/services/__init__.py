"""Services for the notification service."""

from notification_service.services.cache import NotificationCache, build_cache
from notification_service.services.idempotency import IdempotencyService
from notification_service.services.store import NotificationStore

__all__ = ["NotificationStore", "NotificationCache", "IdempotencyService", "build_cache"]
