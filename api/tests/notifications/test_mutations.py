"""
Tests for notification write endpoints:
- PATCH /api/notifications/{id}/read
- PATCH /api/notifications/mark-all-read
- DELETE /api/notifications/{id}
"""

from httpx import AsyncClient


class TestMarkRead:
    """PATCH /api/notifications/{id}/read tests."""

    async def test_mark_read_sets_flag_and_state(
        self, async_client: AsyncClient, create_notification, user_headers
    ):
        """Reading moves the record to read and stamps readAt."""
        created = await create_notification()
        response = await async_client.patch(
            f"/api/notifications/{created['id']}/read", headers=user_headers("U1")
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["read"] is True
        assert data["state"] == "read"
        assert data["readAt"] is not None

    async def test_mark_read_is_idempotent(
        self, async_client: AsyncClient, create_notification, user_headers
    ):
        """A second read keeps the first readAt."""
        created = await create_notification()
        first = await async_client.patch(
            f"/api/notifications/{created['id']}/read", headers=user_headers("U1")
        )
        second = await async_client.patch(
            f"/api/notifications/{created['id']}/read", headers=user_headers("U1")
        )
        assert second.status_code == 200
        assert second.json()["data"]["readAt"] == first.json()["data"]["readAt"]

    async def test_mark_unread_restores_delivery_state(
        self, async_client: AsyncClient, create_notification, user_headers
    ):
        """Clearing the flag re-derives the state from the channels."""
        created = await create_notification(channels=["push"])
        await async_client.patch(f"/api/notifications/{created['id']}/read", headers=user_headers("U1"))

        response = await async_client.patch(
            f"/api/notifications/{created['id']}/read",
            json={"read": False},
            headers=user_headers("U1"),
        )
        data = response.json()["data"]
        assert data["read"] is False
        assert data["readAt"] is None
        assert data["state"] == "sent"

    async def test_mark_read_other_recipient_404(
        self, async_client: AsyncClient, create_notification, user_headers
    ):
        """Only the owner can mark a record read."""
        created = await create_notification("U1")
        response = await async_client.patch(
            f"/api/notifications/{created['id']}/read", headers=user_headers("U2")
        )
        assert response.status_code == 404

        response = await async_client.get(
            f"/api/notifications/{created['id']}", headers=user_headers("U1")
        )
        assert response.json()["data"]["read"] is False


class TestMarkAllRead:
    """PATCH /api/notifications/mark-all-read tests."""

    async def test_marks_every_unread(
        self, async_client: AsyncClient, create_notification, user_headers
    ):
        """modifiedCount is the number of records that changed."""
        created = [await create_notification() for _ in range(3)]
        await async_client.patch(
            f"/api/notifications/{created[0]['id']}/read", headers=user_headers("U1")
        )

        response = await async_client.patch(
            "/api/notifications/mark-all-read", headers=user_headers("U1")
        )
        assert response.status_code == 200
        assert response.json()["data"]["modifiedCount"] == 2

        response = await async_client.get("/api/notifications/unread-count", headers=user_headers("U1"))
        assert response.json()["data"]["count"] == 0

        response = await async_client.patch(
            "/api/notifications/mark-all-read", headers=user_headers("U1")
        )
        assert response.json()["data"]["modifiedCount"] == 0

    async def test_marks_only_requested_type(
        self, async_client: AsyncClient, create_notification, user_headers
    ):
        """type restricts which records are marked."""
        await create_notification(type="like")
        await create_notification(type="message")

        response = await async_client.patch(
            "/api/notifications/mark-all-read", json={"type": "like"}, headers=user_headers("U1")
        )
        assert response.json()["data"]["modifiedCount"] == 1

        response = await async_client.get("/api/notifications/unread-count", headers=user_headers("U1"))
        assert response.json()["data"]["count"] == 1

    async def test_leaves_other_recipients_alone(
        self, async_client: AsyncClient, create_notification, user_headers
    ):
        """Only the caller's records are touched."""
        await create_notification("U1")
        await create_notification("U2")

        await async_client.patch("/api/notifications/mark-all-read", headers=user_headers("U1"))

        response = await async_client.get("/api/notifications/unread-count", headers=user_headers("U2"))
        assert response.json()["data"]["count"] == 1


class TestDeleteNotification:
    """DELETE /api/notifications/{id} tests."""

    async def test_delete_removes_record(
        self, async_client: AsyncClient, create_notification, user_headers
    ):
        """A deleted record is gone from reads and counts."""
        created = await create_notification()
        response = await async_client.delete(
            f"/api/notifications/{created['id']}", headers=user_headers("U1")
        )
        assert response.status_code == 200
        assert response.json()["success"] is True

        response = await async_client.get(
            f"/api/notifications/{created['id']}", headers=user_headers("U1")
        )
        assert response.status_code == 404

        response = await async_client.get("/api/notifications/unread-count", headers=user_headers("U1"))
        assert response.json()["data"]["count"] == 0

    async def test_delete_twice_returns_404(
        self, async_client: AsyncClient, create_notification, user_headers
    ):
        """Deleting an already deleted record is a 404."""
        created = await create_notification()
        await async_client.delete(f"/api/notifications/{created['id']}", headers=user_headers("U1"))
        response = await async_client.delete(
            f"/api/notifications/{created['id']}", headers=user_headers("U1")
        )
        assert response.status_code == 404

    async def test_delete_other_recipient_404(
        self, async_client: AsyncClient, create_notification, user_headers
    ):
        """Another recipient cannot delete the record."""
        created = await create_notification("U1")
        response = await async_client.delete(
            f"/api/notifications/{created['id']}", headers=user_headers("U2")
        )
        assert response.status_code == 404

        response = await async_client.get(
            f"/api/notifications/{created['id']}", headers=user_headers("U1")
        )
        assert response.status_code == 200
