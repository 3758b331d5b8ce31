"""JWT validation for recipient sessions."""

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from notification_service.config import Settings, settings


def create_access_token(
    recipient: str,
    *,
    expires_in: timedelta = timedelta(minutes=15),
    config: Settings | None = None,
) -> str:
    """Issue a bearer token for ``recipient`` (used by tests and tooling)."""
    config = config or settings
    payload = {
        "sub": recipient,
        "exp": datetime.now(timezone.utc) + expires_in,
        "type": "access",
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def decode_token(token: str, config: Settings | None = None) -> dict[str, Any] | None:
    """
    Decode and validate a JWT token.

    Returns the payload if valid, None if invalid or expired.
    """
    config = config or settings
    try:
        return jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except JWTError:
        return None


def recipient_from_token(token: str, config: Settings | None = None) -> str | None:
    """The recipient named by a valid token (``sub``, or a legacy ``userId`` claim)."""
    payload = decode_token(token, config)
    if not payload:
        return None
    recipient = payload.get("sub") or payload.get("userId")
    if not recipient or not isinstance(recipient, str):
        return None
    return recipient
