"""In-app channel: the stored record is the feed entry."""

from notification_service.channels.base import ChannelAdapter, DispatchResult
from notification_service.models.enums import Channel
from notification_service.models.notification import Notification


class InAppAdapter(ChannelAdapter):
    channel = Channel.INAPP
    deadline = 2.0

    async def dispatch(self, notification: Notification) -> DispatchResult:
        return DispatchResult.accepted()
