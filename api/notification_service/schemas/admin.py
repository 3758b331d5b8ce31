"""Operator request schemas."""

from datetime import timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from notification_service.schemas.notifications import NotificationCreateBase

MAX_MASS_RECIPIENTS = 1000

TimeRange = Literal["1h", "24h", "7d", "30d", "90d", "365d"]

TIME_RANGES: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "365d": timedelta(days=365),
}


class TargetUsers(BaseModel):
    """Explicit recipient list for a mass send."""

    model_config = ConfigDict(populate_by_name=True)

    user_ids: list[str] = Field(
        ..., alias="userIds", min_length=1, max_length=MAX_MASS_RECIPIENTS
    )

    @field_validator("user_ids")
    @classmethod
    def clean_ids(cls, v: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for user_id in v:
            user_id = user_id.strip()
            if not user_id or len(user_id) > 100:
                raise ValueError("each userId must be 1 to 100 characters")
            seen.setdefault(user_id, None)
        return list(seen)


class MassNotificationCreate(NotificationCreateBase):
    """One notification body sent to many recipients."""

    target_users: TargetUsers = Field(..., alias="targetUsers")


class CleanupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    older_than_days: int = Field(default=90, alias="olderThanDays", ge=1, le=365)
    keep_read: bool = Field(default=False, alias="keepRead")
    dry_run: bool = Field(default=True, alias="dryRun")


class CacheClearRequest(BaseModel):
    """Clear one recipient's cache entries, or all of them."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(default=None, alias="userId", min_length=1, max_length=100)
    clear_all: bool = Field(default=False, alias="clearAll")

    @model_validator(mode="after")
    def needs_target(self) -> "CacheClearRequest":
        if self.user_id is None and not self.clear_all:
            raise ValueError("either userId or clearAll must be specified")
        return self
