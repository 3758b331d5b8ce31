"""Rate limiting middleware using slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from notification_service.config import settings

# IP-based limits; create endpoints carry their own decorators.
limiter = Limiter(key_func=get_remote_address)

create_limit = settings.create_rate_limit
system_create_limit = settings.system_create_rate_limit


def reset_limiter() -> None:
    """Reset the limiter storage. Used in tests to clear rate limit state."""
    limiter.reset()
