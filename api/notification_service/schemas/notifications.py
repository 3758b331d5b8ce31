"""Notification request schemas.

User-originated and system-originated creates are separate models that share
``NotificationCreateBase``: the user create defaults the recipient to the
caller, the system create must name it.
"""

import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from notification_service.config import settings
from notification_service.models.enums import (
    CHANNEL_ALIASES,
    CHANNEL_ORDER,
    Channel,
    NotificationKind,
    NotificationState,
    Priority,
)


def _parse_channel(name: Any) -> Channel:
    if isinstance(name, Channel):
        return name
    channel = CHANNEL_ALIASES.get(str(name))
    if channel is None:
        allowed = ", ".join(c.value for c in CHANNEL_ORDER)
        raise ValueError(f"unknown channel '{name}' (allowed: {allowed})")
    return channel


def normalize_channels(value: Any) -> list[Channel] | None:
    """
    Accept channels as a list of names or as a map of name to flag.

    ``["push", "email"]``, ``{"push": true, "email": false}`` and
    ``{"push": {"enabled": true}}`` are all understood.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    if isinstance(value, dict):
        selected = []
        for name, flag in value.items():
            enabled = flag.get("enabled", True) if isinstance(flag, dict) else bool(flag)
            channel = _parse_channel(name)
            if enabled:
                selected.append(channel)
        value = selected
    if not isinstance(value, (list, tuple, set)):
        raise ValueError("channels must be a list of names or a map of name to flag")
    requested = {_parse_channel(name) for name in value}
    return [channel for channel in CHANNEL_ORDER if channel in requested]


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class Scheduling(BaseModel):
    """Immediate delivery unless ``scheduledFor`` is set."""

    model_config = ConfigDict(populate_by_name=True)

    scheduled_for: datetime | None = Field(default=None, alias="scheduledFor")

    @field_validator("scheduled_for")
    @classmethod
    def normalize_timezone(cls, v: datetime | None) -> datetime | None:
        return _aware(v)


class NotificationCreateBase(BaseModel):
    """Fields and validation shared by both create operations."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=1000)
    type: NotificationKind
    priority: Priority = Priority.NORMAL
    metadata: dict[str, Any] = Field(default_factory=dict)
    channels: list[Channel] | None = None
    scheduling: Scheduling | None = None
    expires_at: datetime | None = Field(default=None, alias="expiresAt")

    @field_validator("title", "message")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("metadata")
    @classmethod
    def bound_metadata(cls, v: dict[str, Any]) -> dict[str, Any]:
        size = len(json.dumps(v, default=str).encode())
        if size > settings.metadata_max_bytes:
            raise ValueError(f"metadata exceeds {settings.metadata_max_bytes} bytes")
        return v

    @field_validator("channels", mode="before")
    @classmethod
    def parse_channels(cls, v: Any) -> list[Channel] | None:
        return normalize_channels(v)

    @field_validator("expires_at")
    @classmethod
    def expiry_in_future(cls, v: datetime | None) -> datetime | None:
        v = _aware(v)
        if v is not None and v <= datetime.now(timezone.utc):
            raise ValueError("expiresAt must be in the future")
        return v

    @model_validator(mode="after")
    def schedule_before_expiry(self) -> "NotificationCreateBase":
        scheduled_for = self.scheduling.scheduled_for if self.scheduling else None
        if scheduled_for and self.expires_at and scheduled_for >= self.expires_at:
            raise ValueError("scheduling.scheduledFor must be before expiresAt")
        return self

    @property
    def scheduled_for(self) -> datetime | None:
        return self.scheduling.scheduled_for if self.scheduling else None

    def fingerprint(self) -> dict[str, Any]:
        """Canonical payload used for idempotency hashing."""
        return self.model_dump(mode="json", by_alias=True)


class UserNotificationCreate(NotificationCreateBase):
    """Create on behalf of the authenticated caller."""

    user_id: str | None = Field(default=None, alias="userId", min_length=1, max_length=100)


class SystemNotificationCreate(NotificationCreateBase):
    """Create from a trusted backend for any recipient."""

    user_id: str = Field(..., alias="userId", min_length=1, max_length=100)


class MarkReadRequest(BaseModel):
    read: bool = True


class MarkAllReadRequest(BaseModel):
    type: NotificationKind | None = None


SORT_FIELDS = {
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "updated_at": "updated_at",
    "priority": "priority",
    "type": "kind",
}


class ListQuery(BaseModel):
    """Query parameters accepted by the list endpoints."""

    type: NotificationKind | None = None
    read: bool | None = None
    status: NotificationState | None = None
    priority: Priority | None = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    sort: str = "createdAt"
    order: str = "desc"
    include_expired: bool = False

    @field_validator("sort")
    @classmethod
    def known_sort(cls, v: str) -> str:
        if v not in SORT_FIELDS:
            raise ValueError(f"sort must be one of {', '.join(sorted(SORT_FIELDS))}")
        return v

    @field_validator("order")
    @classmethod
    def known_order(cls, v: str) -> str:
        v = v.lower()
        if v not in ("asc", "desc"):
            raise ValueError("order must be asc or desc")
        return v

    def cache_params(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
