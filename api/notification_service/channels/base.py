"""Channel adapter contract."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from notification_service.models.enums import Channel, DispatchStatus
from notification_service.models.notification import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome reported by an adapter for one dispatch."""

    status: DispatchStatus
    error: str | None = None

    @classmethod
    def accepted(cls) -> "DispatchResult":
        return cls(DispatchStatus.ACCEPTED)

    @classmethod
    def transient(cls, error: str) -> "DispatchResult":
        return cls(DispatchStatus.TRANSIENT, error)

    @classmethod
    def permanent(cls, error: str) -> "DispatchResult":
        return cls(DispatchStatus.PERMANENT, error)


def classify_status(status_code: int) -> DispatchStatus:
    """Map a vendor HTTP status onto a dispatch outcome."""
    if 200 <= status_code < 300:
        return DispatchStatus.ACCEPTED
    if status_code in (408, 429) or status_code >= 500:
        return DispatchStatus.TRANSIENT
    return DispatchStatus.PERMANENT


class ChannelAdapter(ABC):
    """
    One delivery backend.

    ``dispatch`` must be safe to repeat for the same notification: vendors
    receive a stable ``{id}:{channel}`` key and de-duplicate on their side.
    Concurrency against the vendor is capped by ``semaphore``; the engine
    enforces ``deadline``.
    """

    channel: Channel
    deadline: float = 10.0

    def __init__(self, *, deadline: float | None = None, concurrency: int = 50):
        if deadline is not None:
            self.deadline = deadline
        self.semaphore = asyncio.Semaphore(concurrency)

    @staticmethod
    def dispatch_key(notification: Notification, channel: Channel) -> str:
        return f"{notification.id}:{channel.value}"

    @abstractmethod
    async def dispatch(self, notification: Notification) -> DispatchResult:
        """Hand ``notification`` to the backend."""

    async def close(self) -> None:
        """Release vendor clients."""
