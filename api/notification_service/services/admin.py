"""Operator use cases behind the ``/api/system`` admin routes."""

from __future__ import annotations

import logging
import time
from typing import Any
from uuid import UUID

from notification_service.delivery.engine import DeliveryEngine
from notification_service.errors import ServiceError
from notification_service.models.enums import Channel
from notification_service.models.notification import utcnow
from notification_service.realtime.registry import SessionRegistry
from notification_service.schemas.admin import TIME_RANGES, MassNotificationCreate
from notification_service.schemas.notifications import ListQuery
from notification_service.services.cache import NotificationCache
from notification_service.services.notifications import NotificationService
from notification_service.services.store import NotificationStore

logger = logging.getLogger(__name__)

_SUCCESSFUL_STATES = ("sent", "delivered", "read")


class AdminService:
    def __init__(
        self,
        store: NotificationStore,
        cache: NotificationCache,
        engine: DeliveryEngine,
        registry: SessionRegistry,
        notifications: NotificationService,
    ):
        self.store = store
        self.cache = cache
        self.engine = engine
        self.registry = registry
        self.notifications = notifications

    # --- Sends ---

    async def mass_send(
        self,
        producer: str,
        payload: MassNotificationCreate,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Create one notification per target user.

        With an idempotency key each recipient gets ``{key}:{userId}``, so a
        retried mass send only creates what is still missing. A failure for
        one recipient is reported and does not stop the others.
        """
        recipients = payload.target_users.user_ids
        ids: list[str] = []
        replayed = 0
        failures: list[dict[str, str]] = []
        for recipient in recipients:
            key = f"{idempotency_key}:{recipient}" if idempotency_key else None
            try:
                result = await self.notifications.create_for(recipient, producer, payload, key)
            except ServiceError as exc:
                logger.warning("Mass send to %s failed: %s", recipient, exc.message)
                failures.append({"userId": recipient, "code": exc.code, "message": exc.message})
                continue
            ids.append(result.data["id"])
            replayed += result.replayed

        logger.info(
            "Mass send by %s (type=%s): %d target(s), %d created, %d failed",
            producer,
            payload.type.value,
            len(recipients),
            len(ids) - replayed,
            len(failures),
        )
        return {
            "targetCount": len(recipients),
            "created": len(ids) - replayed,
            "replayed": replayed,
            "failed": failures,
            "notificationIds": ids,
        }

    async def force_send(self, notification_id: UUID | str) -> dict[str, Any]:
        record = await self.engine.force_send(notification_id)
        return record.to_dict()

    # --- Reads ---

    async def recipient_notifications(
        self, recipient: str, limit: int = 50, offset: int = 0
    ) -> dict[str, Any]:
        return await self.notifications.list(recipient, ListQuery(limit=limit, offset=offset))

    async def stats(self) -> dict[str, Any]:
        """Store totals, the last day's states, cache and realtime counters."""
        since = utcnow() - TIME_RANGES["24h"]
        return {
            "uptimeSeconds": round(time.time() - self.engine.metrics.started_at, 1),
            "notifications": await self.store.health(),
            "last24h": await self.store.state_breakdown(since),
            "cache": self.cache.stats(),
            "realtime": {
                "recipients": self.registry.recipient_count,
                "sessions": self.registry.session_count,
            },
            "engine": {
                "accepting": self.engine.accepting,
                "inFlight": self.engine.in_flight,
                "scheduled": len(self.engine.scheduler),
            },
        }

    async def delivery_stats(self, time_range: str, channel: Channel | None = None) -> dict[str, Any]:
        """
        Outcome counts for records created within ``time_range``.

        Per-channel dispatch counts come from this worker's counters and
        cover the time since it started, not ``time_range``.
        """
        breakdown = await self.store.state_breakdown(utcnow() - TIME_RANGES[time_range])
        total = sum(breakdown.values())
        successful = sum(breakdown.get(state, 0) for state in _SUCCESSFUL_STATES)

        dispatches: dict[str, dict[str, int]] = {}
        for (name, status), count in self.engine.metrics.dispatches.items():
            if channel is not None and name != channel.value:
                continue
            dispatches.setdefault(name, {})[status] = count

        return {
            "timeRange": time_range,
            "total": total,
            "successful": successful,
            "failed": breakdown.get("failed", 0),
            "pending": breakdown.get("pending", 0),
            "successRate": round(successful / total * 100, 2) if total else 0.0,
            "statusBreakdown": breakdown,
            "channelDispatches": dispatches,
        }

    async def type_distribution(self, time_range: str, recipient: str | None = None) -> list[dict[str, Any]]:
        rows = await self.store.kind_distribution(utcnow() - TIME_RANGES[time_range], recipient)
        return [
            {"type": kind.value, "count": total, "unreadCount": unread}
            for kind, total, unread in rows
        ]

    # --- Maintenance ---

    async def cleanup(self, older_than_days: int, *, keep_read: bool, dry_run: bool) -> dict[str, Any]:
        cutoff = utcnow() - TIME_RANGES["24h"] * older_than_days
        count = await self.store.cleanup(cutoff, keep_read=keep_read, dry_run=dry_run)
        logger.info(
            "Cleanup of notifications older than %d day(s) (keepRead=%s, dryRun=%s): %d record(s)",
            older_than_days,
            keep_read,
            dry_run,
            count,
        )
        key = "matchedCount" if dry_run else "deletedCount"
        return {key: count, "olderThanDays": older_than_days, "keepRead": keep_read, "dryRun": dry_run}

    async def clear_cache(self, recipient: str | None = None, clear_all: bool = False) -> dict[str, Any]:
        if clear_all:
            cleared = await self.cache.clear_all()
        else:
            cleared = await self.cache.invalidate_recipient(recipient)
        return {"clearedKeys": cleared, "userId": recipient, "clearAll": clear_all}
