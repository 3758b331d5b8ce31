"""Closed enumerations shared by the store, the delivery engine and the API."""

from enum import Enum


class NotificationKind(str, Enum):
    """Notification category. Part of the external contract."""

    MESSAGE = "message"
    MATCH = "match"
    LIKE = "like"
    SUPERLIKE = "superlike"
    RIZZ = "rizz"
    CONNECTION = "connection"
    SYSTEM = "system"
    PROMOTIONAL = "promotional"
    REMINDER = "reminder"
    UPDATE = "update"
    # alert/warning/error are display categories only
    ALERT = "alert"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"
    INFO = "info"
    ACHIEVEMENT = "achievement"
    EVENT = "event"
    SOCIAL = "social"
    PAYMENT = "payment"
    SECURITY = "security"
    MAINTENANCE = "maintenance"
    DATE_REQUEST = "date_request"
    DATE_ACCEPTED = "date_accepted"
    DATE_DECLINED = "date_declined"
    DATE_CANCELED = "date_canceled"
    DATE_REMINDER = "date_reminder"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class NotificationState(str, Enum):
    """Pipeline position of a notification."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Channel(str, Enum):
    """Delivery channel, declared in dispatch order."""

    PUSH = "push"
    EMAIL = "email"
    INAPP = "inapp"
    SOCKET = "socket"


# Stable dispatch order
CHANNEL_ORDER: tuple[Channel, ...] = (
    Channel.PUSH,
    Channel.EMAIL,
    Channel.INAPP,
    Channel.SOCKET,
)

# Names accepted on the wire for channels
CHANNEL_ALIASES = {
    "push": Channel.PUSH,
    "email": Channel.EMAIL,
    "inapp": Channel.INAPP,
    "inApp": Channel.INAPP,
    "in_app": Channel.INAPP,
    "socket": Channel.SOCKET,
    "websocket": Channel.SOCKET,
}


class DispatchStatus(str, Enum):
    """Outcome of a single adapter dispatch (or a later acknowledgement)."""

    ACCEPTED = "accepted"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    ACKNOWLEDGED = "acknowledged"
