"""Channel adapters."""

from notification_service.channels.base import ChannelAdapter, DispatchResult
from notification_service.channels.email import EmailAdapter
from notification_service.channels.inapp import InAppAdapter
from notification_service.channels.push import PushAdapter
from notification_service.channels.socket import SocketAdapter

__all__ = [
    "ChannelAdapter",
    "DispatchResult",
    "PushAdapter",
    "EmailAdapter",
    "InAppAdapter",
    "SocketAdapter",
]
