"""Realtime socket channel."""

import logging

from notification_service.channels.base import ChannelAdapter, DispatchResult
from notification_service.models.enums import Channel
from notification_service.models.notification import Notification
from notification_service.realtime.registry import SessionRegistry

logger = logging.getLogger(__name__)

NOTIFICATION_EVENT = "notification"


class SocketAdapter(ChannelAdapter):
    """Pushes the record to every session the recipient has on this worker."""

    channel = Channel.SOCKET
    deadline = 1.0

    def __init__(self, registry: SessionRegistry, **kwargs):
        super().__init__(**kwargs)
        self.registry = registry

    async def dispatch(self, notification: Notification) -> DispatchResult:
        payload = {"event": NOTIFICATION_EVENT, "record": notification.to_dict()}
        delivered = await self.registry.broadcast(notification.recipient, payload)
        if delivered:
            logger.debug(
                "Notification %s pushed to %d session(s)", notification.id, delivered
            )
            return DispatchResult.accepted()
        return DispatchResult.transient("recipient has no active session")
