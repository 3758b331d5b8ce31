"""Idempotency service for safe create retries."""

import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from notification_service.errors import DuplicateNotification, IdempotencyConflict
from notification_service.models.idempotency import IdempotencyKey
from notification_service.models.notification import as_utc

# Idempotency keys expire after 24 hours
IDEMPOTENCY_TTL = timedelta(hours=24)


class IdempotencyService:
    """
    Idempotency bookkeeping, run inside the caller's transaction.

    The store claims the key in the same transaction that inserts the
    notification, so a key is never recorded without its record.
    """

    def __init__(self, db: AsyncSession, ttl: timedelta = IDEMPOTENCY_TTL):
        self.db = db
        self.ttl = ttl

    @staticmethod
    def hash_request(payload: dict[str, Any]) -> str:
        """Generate SHA256 hash of the canonical request payload."""
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    async def check(self, key: str, producer: str, request_hash: str) -> None:
        """
        Look for an earlier use of ``key`` by ``producer``.

        Raises:
            DuplicateNotification - same request within the window
            IdempotencyConflict - same key, different payload
        """
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            select(IdempotencyKey)
            .where(IdempotencyKey.key == key)
            .where(IdempotencyKey.producer == producer)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return

        # Check if expired - allow reuse
        if as_utc(record.created_at) < now - self.ttl:
            await self.db.delete(record)
            await self.db.flush()
            return

        if record.request_hash != request_hash:
            raise IdempotencyConflict()

        raise DuplicateNotification(record.response_body or {})

    async def claim(
        self,
        key: str,
        producer: str,
        request_hash: str,
        notification_id: UUID,
        response: dict[str, Any],
    ) -> None:
        """Record the key with the response it produced."""
        self.db.add(
            IdempotencyKey(
                key=key,
                producer=producer,
                request_hash=request_hash,
                notification_id=notification_id,
                response_body=response,
                created_at=datetime.now(timezone.utc),
            )
        )
        await self.db.flush()

    async def purge_expired(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        result = await self.db.execute(
            delete(IdempotencyKey).where(IdempotencyKey.created_at < now - self.ttl)
        )
        return result.rowcount or 0
