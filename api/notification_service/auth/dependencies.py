"""Authentication dependencies for FastAPI endpoints."""

import logging

from fastapi import Header, Request

from notification_service.auth.api_key import get_key_prefix, verify_system_key
from notification_service.auth.jwt import recipient_from_token
from notification_service.errors import AuthenticationFailed

logger = logging.getLogger(__name__)

SYSTEM_PRODUCER = "system"


async def get_current_recipient(
    request: Request,
    authorization: str | None = Header(default=None),
) -> str:
    """
    Validate the bearer token and return the caller's recipient id.

    Raises:
        AuthenticationFailed: 401 if the token is missing, invalid or expired
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationFailed("Authentication required")

    token = authorization[len("Bearer "):].strip()
    if not token:
        raise AuthenticationFailed("Authentication token required")

    recipient = recipient_from_token(token, request.app.state.runtime.settings)
    if recipient is None:
        logger.info("Rejected bearer token from %s", request.client.host if request.client else "-")
        raise AuthenticationFailed("Invalid or expired token")
    return recipient


async def require_system_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="x-api-key"),
) -> str:
    """
    Validate the system API key and return the producer identity.

    Raises:
        AuthenticationFailed: 401 if the key is missing or unknown
    """
    if not x_api_key:
        raise AuthenticationFailed("API key required")

    if not verify_system_key(x_api_key, request.app.state.runtime.settings):
        logger.warning("Rejected system API key %s...", get_key_prefix(x_api_key))
        raise AuthenticationFailed("Invalid API key")
    return SYSTEM_PRODUCER
