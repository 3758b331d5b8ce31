"""
Health check endpoint tests.
"""

import pytest
from httpx import AsyncClient

from notification_service.errors import StoreUnavailable


class TestHealthCheck:
    """Tests for GET /health."""

    async def test_health_returns_200(self, async_client: AsyncClient):
        """Health check endpoint returns 200 OK."""
        response = await async_client.get("/health")
        assert response.status_code == 200

    async def test_health_returns_healthy_status(self, async_client: AsyncClient):
        """Health check returns status: healthy with store counters."""
        response = await async_client.get("/health")
        data = response.json()["data"]
        assert data["status"] == "healthy"
        assert data["store"]["status"] == "up"
        assert data["store"]["total"] == 0

    async def test_health_does_not_require_auth(self, async_client: AsyncClient):
        """Health check works without authentication."""
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json()["success"] is True

    async def test_health_echoes_request_id(self, async_client: AsyncClient):
        """A caller-supplied request id is echoed back."""
        response = await async_client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["requestId"] == "req-123"

    async def test_health_degraded_when_store_down(
        self, async_client: AsyncClient, runtime, monkeypatch: pytest.MonkeyPatch
    ):
        """An unreachable store turns health into 503."""

        async def broken_health():
            raise StoreUnavailable()

        monkeypatch.setattr(runtime.store, "health", broken_health)
        response = await async_client.get("/health")
        assert response.status_code == 503
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "SERVICE_DEGRADED"
        assert body["data"]["store"]["status"] == "down"


class TestLivenessAndReadiness:
    """Tests for GET /health/live and GET /health/ready."""

    async def test_live_needs_no_dependencies(
        self, async_client: AsyncClient, runtime, monkeypatch: pytest.MonkeyPatch
    ):
        """Liveness stays 200 while the store is down."""

        async def broken_health():
            raise StoreUnavailable()

        monkeypatch.setattr(runtime.store, "health", broken_health)
        response = await async_client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "alive"

    async def test_ready_when_store_and_engine_are_up(self, async_client: AsyncClient):
        """A healthy worker is ready."""
        response = await async_client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["data"]["dependencies"] == {
            "store": "connected",
            "delivery": "accepting",
        }

    async def test_not_ready_when_store_down(
        self, async_client: AsyncClient, runtime, monkeypatch: pytest.MonkeyPatch
    ):
        """An unreachable store takes the worker out of rotation."""

        async def broken_health():
            raise StoreUnavailable()

        monkeypatch.setattr(runtime.store, "health", broken_health)
        response = await async_client.get("/health/ready")
        assert response.status_code == 503
        body = response.json()
        assert body["code"] == "NOT_READY"
        assert body["data"]["dependencies"]["store"] == "disconnected"

    async def test_not_ready_while_draining(self, async_client: AsyncClient, runtime):
        """A stopping engine reports not ready."""
        await runtime.engine.stop(grace=1.0)
        response = await async_client.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["data"]["dependencies"]["delivery"] == "stopped"
