"""Notification use cases behind the HTTP routes.

Reads go through the recipient-scoped cache; writes go to the store, whose
change hook drops the recipient's cache namespace before the call returns.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any
from uuid import UUID

from notification_service.config import Settings
from notification_service.delivery.engine import DeliveryEngine
from notification_service.errors import DuplicateNotification, ServiceError, ValidationFailed
from notification_service.models.enums import Channel, NotificationKind
from notification_service.models.notification import utcnow
from notification_service.schemas.notifications import (
    SORT_FIELDS,
    ListQuery,
    NotificationCreateBase,
    SystemNotificationCreate,
    UserNotificationCreate,
    normalize_channels,
)
from notification_service.services.cache import NotificationCache
from notification_service.services.idempotency import IdempotencyService
from notification_service.services.store import (
    IdempotencyRequest,
    ListFilter,
    NotificationDraft,
    NotificationStore,
    PageRequest,
)

logger = logging.getLogger(__name__)


class CreateResult:
    """A created (or replayed) notification in wire form."""

    def __init__(self, data: dict[str, Any], replayed: bool = False):
        self.data = data
        self.replayed = replayed


class NotificationService:
    def __init__(
        self,
        store: NotificationStore,
        cache: NotificationCache,
        engine: DeliveryEngine,
        config: Settings,
    ):
        self.store = store
        self.cache = cache
        self.engine = engine
        self.config = config
        self.default_channels = normalize_channels(config.default_channels_list) or []

    # --- Create ---

    async def create_for_recipient(
        self,
        recipient: str,
        payload: UserNotificationCreate,
        idempotency_key: str | None = None,
    ) -> CreateResult:
        """Create a notification addressed to the caller."""
        if payload.user_id is not None and payload.user_id != recipient:
            raise ValidationFailed(
                "userId must match the authenticated user",
                details=[{"field": "userId", "message": "must match the authenticated user"}],
            )
        return await self._create(recipient, recipient, payload, idempotency_key)

    async def create_for_system(
        self,
        producer: str,
        payload: SystemNotificationCreate,
        idempotency_key: str | None = None,
    ) -> CreateResult:
        """Create a notification for any recipient on behalf of a backend."""
        return await self._create(payload.user_id, producer, payload, idempotency_key)

    async def create_for(
        self,
        recipient: str,
        producer: str,
        payload: NotificationCreateBase,
        idempotency_key: str | None = None,
    ) -> CreateResult:
        """Create ``payload`` for ``recipient``; used by mass sends."""
        return await self._create(recipient, producer, payload, idempotency_key)

    async def _create(
        self,
        recipient: str,
        producer: str,
        payload: NotificationCreateBase,
        idempotency_key: str | None,
    ) -> CreateResult:
        channels = payload.channels if payload.channels is not None else self.default_channels
        expires_at = payload.expires_at or utcnow() + timedelta(days=self.config.default_ttl_days)
        draft = NotificationDraft(
            recipient=recipient,
            producer=producer,
            title=payload.title,
            body=payload.message,
            kind=payload.type,
            priority=payload.priority,
            metadata=payload.metadata,
            channels=list(channels),
            scheduled_for=payload.scheduled_for,
            expires_at=expires_at,
        )

        idempotency = None
        if idempotency_key:
            fingerprint = {"recipient": recipient, **payload.fingerprint()}
            idempotency = IdempotencyRequest(
                key=idempotency_key,
                request_hash=IdempotencyService.hash_request(fingerprint),
            )

        try:
            record = await self.store.create(draft, idempotency)
        except DuplicateNotification as duplicate:
            logger.info(
                "Idempotent replay of key %s for producer %s", idempotency_key, producer
            )
            return CreateResult(duplicate.response, replayed=True)

        logger.info(
            "Notification %s created for %s by %s (type=%s, channels=%s)",
            record.id,
            recipient,
            producer,
            record.kind.value,
            ",".join(c.value for c in record.channels_requested) or "-",
        )
        self.engine.metrics.record_created(record.kind.value, record.priority.value)
        self.engine.submit(record)
        await self._enforce_cap(recipient)
        return CreateResult(record.to_dict())

    async def _enforce_cap(self, recipient: str) -> None:
        try:
            await self.store.enforce_recipient_cap(recipient, self.config.max_notifications_per_user)
        except ServiceError as exc:
            logger.warning("Could not enforce notification cap for %s: %s", recipient, exc)

    # --- Reads ---

    async def list(
        self,
        recipient: str,
        query: ListQuery,
        kind: NotificationKind | None = None,
    ) -> dict[str, Any]:
        """Page of the caller's notifications plus pagination info."""
        if kind is not None:
            query = query.model_copy(update={"type": kind})
        filters = ListFilter(
            kind=query.type,
            read=query.read,
            state=query.status,
            priority=query.priority,
            include_expired=query.include_expired,
        )
        try:
            page = PageRequest(
                limit=query.limit,
                offset=query.offset,
                sort=SORT_FIELDS[query.sort],
                order=query.order,
            )
        except ValueError as exc:
            raise ValidationFailed(str(exc)) from exc

        async def load() -> dict[str, Any]:
            result = await self.store.list(recipient, filters, page)
            return {
                "notifications": [record.to_dict() for record in result.items],
                "pagination": {
                    "total": result.total,
                    "limit": result.limit,
                    "offset": result.offset,
                    "hasMore": result.has_more,
                },
            }

        key = self.cache.list_key(recipient, query.cache_params())
        value, _ = await self.cache.get_or_load(key, self.cache.list_ttl, load)
        return value

    async def get(
        self,
        notification_id: UUID | str,
        recipient: str,
        *,
        include_expired: bool = False,
    ) -> dict[str, Any]:
        record = await self.store.get(notification_id, recipient, include_expired=include_expired)
        return record.to_dict()

    async def unread_count(self, recipient: str, kind: NotificationKind | None = None) -> int:
        async def load() -> int:
            return await self.store.count_unread(recipient, kind)

        key = self.cache.unread_key(recipient, kind.value if kind else None)
        value, _ = await self.cache.get_or_load(key, self.cache.unread_ttl, load)
        return int(value)

    async def grouped(
        self,
        recipient: str,
        *,
        include_read: bool = False,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        """Per-type counts with the newest notification of each type."""

        async def load() -> list[dict[str, Any]]:
            groups = await self.store.group_by_kind(recipient, include_read=include_read, limit=limit)
            return [
                {
                    "type": group.kind.value,
                    "count": group.total,
                    "unreadCount": group.unread_total,
                    "latestNotification": group.latest.to_dict(),
                }
                for group in groups
            ]

        params = {"includeRead": include_read, "limit": limit}
        key = self.cache.grouped_key(recipient, params)
        value, _ = await self.cache.get_or_load(key, self.cache.grouped_ttl, load)
        return value

    # --- Writes ---

    async def mark_read(
        self, notification_id: UUID | str, recipient: str, read: bool = True
    ) -> dict[str, Any]:
        record = await self.store.update_read(notification_id, recipient, read)
        logger.info("Notification %s marked %s by %s", record.id, "read" if read else "unread", recipient)
        return record.to_dict()

    async def mark_all_read(self, recipient: str, kind: NotificationKind | None = None) -> int:
        modified = await self.store.update_all_read(recipient, kind)
        logger.info(
            "Marked %d notification(s) read for %s (type=%s)",
            modified,
            recipient,
            kind.value if kind else "*",
        )
        return modified

    async def delete(self, notification_id: UUID | str, recipient: str) -> None:
        await self.store.delete(notification_id, recipient)
        logger.info("Notification %s deleted by %s", notification_id, recipient)

    async def acknowledge(
        self,
        notification_id: UUID | str,
        recipient: str,
        channel: Channel = Channel.SOCKET,
    ) -> dict[str, Any]:
        record = await self.engine.acknowledge(notification_id, channel, recipient=recipient)
        return record.to_dict()
