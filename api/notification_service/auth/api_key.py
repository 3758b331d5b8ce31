"""System API key verification.

Configured keys are compared by their HMAC-SHA256 digest under the server
secret, in constant time.
"""

import hashlib
import hmac

from notification_service.config import Settings, settings


def hash_api_key(key: str, config: Settings | None = None) -> str:
    """Hash API key using HMAC-SHA256 with server secret."""
    config = config or settings
    return hmac.new(
        config.api_key_secret.encode(),
        key.encode(),
        hashlib.sha256,
    ).hexdigest()


def get_key_prefix(key: str) -> str:
    """First 8 chars of a key, safe to log."""
    return key[:8]


def verify_system_key(key: str, config: Settings | None = None) -> bool:
    """True if ``key`` matches one of the configured system keys."""
    config = config or settings
    candidate = hash_api_key(key, config)
    matched = False
    for configured in config.system_api_keys_list:
        # Check every key so timing does not reveal which one matched
        if hmac.compare_digest(candidate, hash_api_key(configured, config)):
            matched = True
    return matched
