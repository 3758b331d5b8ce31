"""
Tests for the push and email channel adapters.
"""

import json
import uuid

import httpx
import pytest

from notification_service.channels.base import classify_status
from notification_service.channels.email import EmailAdapter, _extract_sendgrid_error_details
from notification_service.channels.inapp import InAppAdapter
from notification_service.channels.push import PushAdapter
from notification_service.models.enums import DispatchStatus, NotificationKind, Priority
from notification_service.models.notification import Notification


def make_notification(**metadata) -> Notification:
    return Notification(
        id=uuid.uuid4(),
        recipient="U1",
        producer="U1",
        title="New like",
        body="Someone <b>liked</b> you",
        kind=NotificationKind.LIKE,
        priority=Priority.HIGH,
        extra_data=metadata,
        per_channel={},
    )


class TestClassifyStatus:
    """classify_status tests."""

    @pytest.mark.parametrize(
        "code,expected",
        [
            (200, DispatchStatus.ACCEPTED),
            (202, DispatchStatus.ACCEPTED),
            (408, DispatchStatus.TRANSIENT),
            (429, DispatchStatus.TRANSIENT),
            (503, DispatchStatus.TRANSIENT),
            (400, DispatchStatus.PERMANENT),
            (404, DispatchStatus.PERMANENT),
        ],
    )
    def test_vendor_status_mapping(self, code, expected):
        """Vendor HTTP statuses map onto dispatch outcomes."""
        assert classify_status(code) is expected


class TestPushAdapter:
    """PushAdapter tests against a mocked gateway."""

    async def test_posts_payload_with_idempotency_key(self):
        """The gateway gets the rendered payload and a per-channel idempotency key."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(202)

        notification = make_notification(deepLink="app://likes")
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        adapter = PushAdapter("https://push.test/send", api_key="secret", client=client)

        result = await adapter.dispatch(notification)
        await adapter.close()

        assert result.status is DispatchStatus.ACCEPTED
        assert seen["headers"]["Idempotency-Key"] == f"{notification.id}:push"
        assert seen["headers"]["Authorization"] == "Bearer secret"
        assert seen["body"]["recipient"] == "U1"
        assert seen["body"]["data"]["type"] == "like"
        assert seen["body"]["data"]["deepLink"] == "app://likes"

    @pytest.mark.parametrize(
        "code,expected",
        [(500, DispatchStatus.TRANSIENT), (410, DispatchStatus.PERMANENT)],
    )
    async def test_gateway_errors_are_classified(self, code, expected):
        """Gateway error statuses are classified and reported."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(code)))
        adapter = PushAdapter("https://push.test/send", client=client)

        result = await adapter.dispatch(make_notification())
        await adapter.close()

        assert result.status is expected
        assert str(code) in result.error

    async def test_network_error_is_transient(self):
        """Connection failures are retried."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        adapter = PushAdapter("https://push.test/send", client=client)

        result = await adapter.dispatch(make_notification())
        await adapter.close()

        assert result.status is DispatchStatus.TRANSIENT

    async def test_unconfigured_gateway_is_permanent(self):
        """Without a gateway URL push can never succeed."""
        result = await PushAdapter("").dispatch(make_notification())
        assert result.status is DispatchStatus.PERMANENT


class FakeSendGridResponse:
    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body


class FakeSendGridError(Exception):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"HTTP Error {status_code}")
        self.status_code = status_code
        self.body = body


class FakeSendGridClient:
    def __init__(self, response=None, error: Exception | None = None):
        self.response = response or FakeSendGridResponse(202)
        self.error = error
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        if self.error is not None:
            raise self.error
        return self.response


class TestEmailAdapter:
    """EmailAdapter tests with a stand-in SendGrid client."""

    async def test_sends_to_metadata_address(self):
        """Email goes to metadata.email from the configured sender."""
        client = FakeSendGridClient()
        adapter = EmailAdapter("key", "noreply@example.com", client=client)
        notification = make_notification(email="u1@example.com")

        result = await adapter.dispatch(notification)

        assert result.status is DispatchStatus.ACCEPTED
        message = client.sent[0].get()
        assert message["personalizations"][0]["to"][0]["email"] == "u1@example.com"
        assert message["subject"] == "New like"
        assert message["headers"]["X-Notification-Key"] == f"{notification.id}:email"
        assert "&lt;b&gt;liked&lt;/b&gt;" in message["content"][0]["value"]

    async def test_missing_address_is_permanent(self):
        """No address means nothing is sent."""
        client = FakeSendGridClient()
        adapter = EmailAdapter("key", "noreply@example.com", client=client)
        result = await adapter.dispatch(make_notification())
        assert result.status is DispatchStatus.PERMANENT
        assert client.sent == []

    async def test_unconfigured_is_permanent(self):
        """Without an API key email can never succeed."""
        adapter = EmailAdapter("", "noreply@example.com")
        result = await adapter.dispatch(make_notification(email="u1@example.com"))
        assert result.status is DispatchStatus.PERMANENT

    async def test_vendor_rejection_is_permanent_with_details(self):
        """A 400 from SendGrid is permanent and carries its error text."""
        body = json.dumps({"errors": [{"message": "The to email does not contain a valid address."}]})
        client = FakeSendGridClient(error=FakeSendGridError(400, body))
        adapter = EmailAdapter("key", "noreply@example.com", client=client)

        result = await adapter.dispatch(make_notification(email="bogus"))
        assert result.status is DispatchStatus.PERMANENT
        assert "valid address" in result.error

    async def test_vendor_throttling_is_transient(self):
        """A 429 from SendGrid is retried."""
        client = FakeSendGridClient(error=FakeSendGridError(429, ""))
        adapter = EmailAdapter("key", "noreply@example.com", client=client)
        result = await adapter.dispatch(make_notification(email="u1@example.com"))
        assert result.status is DispatchStatus.TRANSIENT

    async def test_connection_failure_is_transient(self):
        """Client-side connection errors are retried."""
        client = FakeSendGridClient(error=ConnectionError("reset"))
        adapter = EmailAdapter("key", "noreply@example.com", client=client)
        result = await adapter.dispatch(make_notification(email="u1@example.com"))
        assert result.status is DispatchStatus.TRANSIENT

    def test_error_details_from_bytes(self):
        """SendGrid error bodies are flattened to one line."""
        body = b'{"errors": [{"message": "a"}, {"message": "b"}]}'
        assert _extract_sendgrid_error_details(body) == "a; b"
        assert _extract_sendgrid_error_details("") is None
        assert _extract_sendgrid_error_details("plain text") == "plain text"


class TestInAppAdapter:
    """InAppAdapter tests."""

    async def test_inbox_write_is_always_accepted(self):
        """The stored record is the inbox entry."""
        result = await InAppAdapter().dispatch(make_notification())
        assert result.status is DispatchStatus.ACCEPTED
