"""
Shared test fixtures for the notification service tests.

Provides a throwaway SQLite store per test, a runtime with controllable
channel adapters, test clients and credential helpers.
"""

import asyncio
import secrets
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.pool import NullPool

from notification_service.auth.jwt import create_access_token
from notification_service.channels.base import ChannelAdapter, DispatchResult
from notification_service.config import Settings
from notification_service.database import create_engine, create_schema, drop_schema
from notification_service.main import create_app
from notification_service.middleware.rate_limit import reset_limiter
from notification_service.models.enums import Channel
from notification_service.models.notification import Notification
from notification_service.runtime import Runtime

SYSTEM_API_KEY = "test-system-key-0123456789"


# --- Test doubles ---


class FakeAdapter(ChannelAdapter):
    """Adapter that replays scripted results and records every dispatch."""

    def __init__(
        self,
        channel: Channel,
        *results: DispatchResult,
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        super().__init__(deadline=1.0, concurrency=10)
        self.channel = channel
        self.results = list(results)
        self.delay = delay
        self.error = error
        self.calls: list[str] = []

    async def dispatch(self, notification: Notification) -> DispatchResult:
        self.calls.append(str(notification.id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if len(self.results) > 1:
            return self.results.pop(0)
        if self.results:
            return self.results[0]
        return DispatchResult.accepted()


class FakeSession:
    """Realtime session handle collecting the frames sent to it."""

    def __init__(self, name: str = "session", fail: bool = False, delay: float = 0.0):
        self.id = f"{name}-{secrets.token_hex(4)}"
        self.fail = fail
        self.delay = delay
        self.frames: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("socket closed")
        self.frames.append(payload)


# --- Rate Limiter Reset Fixture ---


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Reset rate limiter before each test to ensure test isolation."""
    reset_limiter()
    yield


# --- Settings / Runtime Fixtures ---


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite file and an in-process cache."""
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'notifications.db'}",
        jwt_secret="test-jwt-secret",
        api_key_secret="test-api-key-secret",
        system_api_keys=SYSTEM_API_KEY,
        cache_enabled=True,
        cache_url="",
        store_timeout_seconds=5.0,
        push_gateway_url="",
        sendgrid_api_key="",
    )


@pytest_asyncio.fixture
async def runtime(test_settings: Settings) -> AsyncGenerator[Runtime, None]:
    """
    A started runtime over a fresh schema.

    Push and email are replaced with accepting fakes; tests swap in their
    own through ``runtime.engine.adapters``.
    """
    db_engine = create_engine(test_settings.database_url, poolclass=NullPool)
    await create_schema(db_engine)

    rt = Runtime(test_settings, db_engine=db_engine)
    rt.engine.adapters[Channel.PUSH] = FakeAdapter(Channel.PUSH)
    rt.engine.adapters[Channel.EMAIL] = FakeAdapter(Channel.EMAIL)
    await rt.start(recover=False, sweep=False)

    yield rt

    await rt.engine.stop(grace=5.0)
    await rt.cache.close()
    await drop_schema(db_engine)
    await db_engine.dispose()


@pytest.fixture
def app(runtime: Runtime):
    return create_app(runtime.settings, runtime=runtime)


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the application."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        follow_redirects=True,
    ) as client:
        yield client


# --- Authentication Helper Fixtures ---


@pytest.fixture
def user_headers(test_settings: Settings) -> Callable[[str], dict[str, str]]:
    """Factory fixture for bearer headers of a given recipient."""

    def _user_headers(recipient: str) -> dict[str, str]:
        token = create_access_token(recipient, config=test_settings)
        return {"Authorization": f"Bearer {token}"}

    return _user_headers


@pytest.fixture
def system_headers() -> dict[str, str]:
    return {"x-api-key": SYSTEM_API_KEY}


# --- Payload Fixtures ---


@pytest.fixture
def notification_payload() -> Callable[..., dict[str, Any]]:
    """Factory fixture for a valid create payload."""

    def _payload(**overrides: Any) -> dict[str, Any]:
        payload = {"title": "T", "message": "M", "type": "like"}
        payload.update(overrides)
        return payload

    return _payload


@pytest.fixture
def create_notification(
    async_client: AsyncClient, runtime: Runtime, user_headers, notification_payload
) -> Callable[..., Any]:
    """Create a notification through the API, wait for delivery, return its data."""

    async def _create(recipient: str = "U1", **overrides: Any) -> dict[str, Any]:
        response = await async_client.post(
            "/api/notifications",
            json=notification_payload(**overrides),
            headers=user_headers(recipient),
        )
        assert response.status_code == 201, response.text
        await runtime.engine.drain(timeout=5.0)
        return response.json()["data"]

    return _create


# --- Utility Fixtures ---


@pytest.fixture
def idempotency_key():
    """Generate a unique idempotency key for testing."""

    def _idempotency_key(prefix: str = "test") -> str:
        return f"{prefix}-{secrets.token_hex(16)}"

    return _idempotency_key


@pytest.fixture
def fake_adapter() -> type[FakeAdapter]:
    return FakeAdapter


@pytest.fixture
def fake_session() -> type[FakeSession]:
    return FakeSession


@pytest.fixture
def frozen_time():
    """
    Fixture for time-based testing using freezegun.

    Usage:
        with frozen_time("2026-02-01 12:00:00"):
            # time is frozen
    """
    from freezegun import freeze_time

    return freeze_time
