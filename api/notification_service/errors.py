"""Domain errors rendered into the response envelope by ``main.py``."""

from typing import Any

from fastapi import status


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"
    message = "An unexpected error occurred"

    def __init__(self, message: str | None = None, *, details: Any = None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details


class ValidationFailed(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    message = "Validation failed"


class AuthenticationFailed(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"
    message = "Authentication required"


class NotificationNotFound(ServiceError):
    """Unknown id, or an id owned by someone else (indistinguishable on purpose)."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    message = "Notification not found"


class IdempotencyConflict(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "IDEMPOTENCY_CONFLICT"
    message = "Idempotency key reused with a different request"


class DuplicateNotification(ServiceError):
    """Raised by the store when an idempotency key replays an earlier create."""

    status_code = status.HTTP_201_CREATED
    code = "DUPLICATE"
    message = "Notification already created for this idempotency key"

    def __init__(self, response: dict[str, Any]):
        super().__init__()
        self.response = response


class NotificationFinalized(ServiceError):
    """The record is read or failed and will not be dispatched again."""

    status_code = status.HTTP_409_CONFLICT
    code = "NOTIFICATION_FINALIZED"
    message = "Notification is already read or failed"


class StoreUnavailable(ServiceError):
    code = "STORE_UNAVAILABLE"
    message = "Notification store is unavailable"


class StaleRecord(Exception):
    """A conditional update kept losing to concurrent writers."""
