"""Notification model and its per-channel delivery state."""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Column,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB

from notification_service.database import Base
from notification_service.models.enums import (
    CHANNEL_ORDER,
    Channel,
    NotificationKind,
    NotificationState,
    Priority,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite drops the offset)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


class Notification(Base):
    """
    A notification addressed to one recipient.

    Immutable after creation except for the read flag, the derived state,
    the per-channel vector and the bookkeeping columns. ``version`` is bumped
    on every mutation so that conditional updates can detect lost races.
    """

    __tablename__ = "notifications"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recipient = Column(String(100), nullable=False)
    producer = Column(String(120), nullable=False)
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=False)
    kind = Column(
        Enum(
            NotificationKind,
            name="notification_kind",
            values_callable=_enum_values,
            native_enum=False,
            length=32,
        ),
        nullable=False,
    )
    priority = Column(
        Enum(
            Priority,
            name="notification_priority",
            values_callable=_enum_values,
            native_enum=False,
            length=16,
        ),
        nullable=False,
        default=Priority.NORMAL,
    )
    priority_rank = Column(Integer, nullable=False, default=1)
    state = Column(
        Enum(
            NotificationState,
            name="notification_state",
            values_callable=_enum_values,
            native_enum=False,
            length=16,
        ),
        nullable=False,
        default=NotificationState.PENDING,
    )
    failure_reason = Column(Text)
    read_flag = Column(Boolean, nullable=False, default=False)
    read_at = Column(TIMESTAMP(timezone=True))
    extra_data = Column("metadata", JSONType, nullable=False, default=dict)  # 'metadata' is reserved in SQLAlchemy
    per_channel = Column(JSONType, nullable=False, default=dict)
    scheduled_for = Column(TIMESTAMP(timezone=True))
    expires_at = Column(TIMESTAMP(timezone=True))
    # Earliest pending dispatch; NULL once every channel is settled.
    next_dispatch_at = Column(TIMESTAMP(timezone=True))
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_notifications_recipient_created", recipient, created_at.desc()),
        Index("idx_notifications_recipient_kind", recipient, kind, created_at.desc()),
        Index("idx_notifications_recipient_read", recipient, read_flag, created_at.desc()),
        Index(
            "idx_notifications_dispatch_due",
            next_dispatch_at,
            id,
            postgresql_where=next_dispatch_at.is_not(None),
            sqlite_where=next_dispatch_at.is_not(None),
        ),
        Index("idx_notifications_expires", expires_at),
    )

    @property
    def channels_requested(self) -> list[Channel]:
        return [c for c in CHANNEL_ORDER if c.value in (self.per_channel or {})]

    def to_dict(self) -> dict[str, Any]:
        """Wire representation of the record."""
        return {
            "id": str(self.id),
            "userId": self.recipient,
            "producer": self.producer,
            "title": self.title,
            "message": self.body,
            "type": self.kind.value,
            "priority": self.priority.value,
            "state": self.state.value,
            "read": bool(self.read_flag),
            "readAt": isoformat(self.read_at),
            "metadata": dict(self.extra_data or {}),
            "channels": {
                channel: {
                    "enabled": entry.get("enabled", True),
                    "dispatched": entry.get("dispatched", False),
                    "dispatchedAt": entry.get("dispatched_at"),
                    "acknowledged": entry.get("acknowledged", False),
                    "acknowledgedAt": entry.get("acknowledged_at"),
                    "lastError": entry.get("last_error"),
                    "permanent": entry.get("permanent", False),
                    "attempts": entry.get("attempts", 0),
                    "nextAttemptAt": entry.get("next_attempt_at"),
                }
                for channel, entry in (self.per_channel or {}).items()
            },
            "scheduling": {"scheduledFor": isoformat(self.scheduled_for)},
            "expiresAt": isoformat(self.expires_at),
            "failureReason": self.failure_reason,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }
