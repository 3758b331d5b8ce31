"""Push channel backed by an HTTP push gateway."""

import logging

import httpx

from notification_service.channels.base import ChannelAdapter, DispatchResult, classify_status
from notification_service.models.enums import Channel, DispatchStatus
from notification_service.models.notification import Notification

logger = logging.getLogger(__name__)


class PushAdapter(ChannelAdapter):
    """POSTs each notification to the configured push gateway."""

    channel = Channel.PUSH

    def __init__(
        self,
        gateway_url: str,
        *,
        api_key: str = "",
        deadline: float = 10.0,
        concurrency: int = 50,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(deadline=deadline, concurrency=concurrency)
        self.gateway_url = gateway_url
        self.api_key = api_key
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.gateway_url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.deadline)
        return self._client

    def build_payload(self, notification: Notification) -> dict:
        return {
            "recipient": notification.recipient,
            "title": notification.title,
            "body": notification.body,
            "data": {
                "notificationId": str(notification.id),
                "type": notification.kind.value,
                "priority": notification.priority.value,
                **(notification.extra_data or {}),
            },
        }

    async def dispatch(self, notification: Notification) -> DispatchResult:
        if not self.configured:
            return DispatchResult.permanent("push gateway not configured")

        headers = {"Idempotency-Key": self.dispatch_key(notification, self.channel)}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self._get_client().post(
                self.gateway_url,
                json=self.build_payload(notification),
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("Push gateway request failed for %s: %s", notification.id, exc)
            return DispatchResult.transient(f"push gateway unreachable: {exc.__class__.__name__}")

        status = classify_status(response.status_code)
        if status is DispatchStatus.ACCEPTED:
            return DispatchResult.accepted()
        return DispatchResult(status, f"push gateway responded {response.status_code}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
