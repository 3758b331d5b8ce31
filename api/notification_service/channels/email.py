"""Email channel delivered through SendGrid."""

from __future__ import annotations

import asyncio
import html
import json
import logging
from typing import Any

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Header, Mail

from notification_service.channels.base import ChannelAdapter, DispatchResult, classify_status
from notification_service.models.enums import Channel, DispatchStatus
from notification_service.models.notification import Notification

logger = logging.getLogger(__name__)


def _extract_sendgrid_error_details(body: Any) -> str | None:
    """Return a human readable description for a SendGrid error payload."""

    if body in (None, ""):
        return None
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except json.JSONDecodeError:
            return body.strip() or None

    if isinstance(body, dict) and isinstance(body.get("errors"), list):
        messages = [
            str(item["message"])
            for item in body["errors"]
            if isinstance(item, dict) and item.get("message")
        ]
        if messages:
            return "; ".join(messages)
    return None


class EmailAdapter(ChannelAdapter):
    """
    Sends the notification to ``metadata["email"]``.

    The SendGrid client is blocking, so every send runs in a worker thread.
    """

    channel = Channel.EMAIL

    def __init__(
        self,
        api_key: str,
        from_address: str,
        *,
        deadline: float = 10.0,
        concurrency: int = 50,
        client: SendGridAPIClient | None = None,
    ):
        super().__init__(deadline=deadline, concurrency=concurrency)
        self.from_address = from_address
        self._client = client or (SendGridAPIClient(api_key) if api_key else None)

    @property
    def configured(self) -> bool:
        return self._client is not None and bool(self.from_address)

    def build_message(self, notification: Notification, address: str) -> Mail:
        message = Mail(
            from_email=self.from_address,
            to_emails=address,
            subject=notification.title,
            html_content=f"<p>{html.escape(notification.body)}</p>",
        )
        message.header = Header("X-Notification-Key", self.dispatch_key(notification, self.channel))
        return message

    async def dispatch(self, notification: Notification) -> DispatchResult:
        if not self.configured:
            return DispatchResult.permanent("email provider not configured")

        address = (notification.extra_data or {}).get("email")
        if not address or not isinstance(address, str):
            return DispatchResult.permanent("recipient has no email address")

        message = self.build_message(notification, address)
        try:
            response = await asyncio.to_thread(self._client.send, message)
        except Exception as exc:
            status_code = getattr(exc, "status_code", None)
            details = _extract_sendgrid_error_details(getattr(exc, "body", None))
            logger.error(
                "SendGrid request failed for %s with status %s: %s",
                notification.id,
                status_code,
                details or exc,
            )
            if isinstance(status_code, int):
                return DispatchResult(classify_status(status_code), details or f"sendgrid {status_code}")
            return DispatchResult.transient(f"sendgrid unreachable: {exc.__class__.__name__}")

        status_code = getattr(response, "status_code", None)
        if not isinstance(status_code, int):
            return DispatchResult.transient("sendgrid returned no status")
        status = classify_status(status_code)
        if status is DispatchStatus.ACCEPTED:
            return DispatchResult.accepted()
        details = _extract_sendgrid_error_details(getattr(response, "body", None))
        return DispatchResult(status, details or f"sendgrid responded {status_code}")
