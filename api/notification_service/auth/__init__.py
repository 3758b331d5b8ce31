"""Authentication utilities for the notification service."""

from notification_service.auth.api_key import hash_api_key, verify_system_key
from notification_service.auth.jwt import create_access_token, decode_token, recipient_from_token

__all__ = [
    "hash_api_key",
    "verify_system_key",
    "create_access_token",
    "decode_token",
    "recipient_from_token",
]
