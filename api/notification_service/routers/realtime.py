"""Websocket stream of notifications for the authenticated recipient."""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from notification_service.auth.jwt import recipient_from_token
from notification_service.errors import ServiceError
from notification_service.realtime.registry import WebSocketSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])


def _token_from(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


@router.websocket("/notifications/ws")
async def notifications_websocket(websocket: WebSocket) -> None:
    """
    Server frames: ``{event: "connected"}`` once, then
    ``{event: "notification", record}`` per delivery.

    Client frames are optional: ``ping``, ``ack`` (confirms receipt of
    ``id`` on the socket channel) and ``mark_read``.
    """
    runtime = websocket.app.state.runtime
    token = _token_from(websocket)
    recipient = recipient_from_token(token, runtime.settings) if token else None
    if recipient is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    session = WebSocketSession(websocket, recipient)
    runtime.registry.attach(recipient, session)
    try:
        await websocket.send_json({"event": "connected", "userId": recipient, "sessionId": session.id})
        while True:
            try:
                message = await websocket.receive_json()
            except WebSocketDisconnect:
                raise
            except ValueError:
                await websocket.send_json({"event": "error", "message": "frames must be JSON"})
                continue
            await _handle_frame(websocket, runtime, recipient, message)
    except WebSocketDisconnect:
        pass
    finally:
        runtime.registry.detach(recipient, session)


async def _handle_frame(websocket: WebSocket, runtime, recipient: str, message) -> None:
    if not isinstance(message, dict):
        await websocket.send_json({"event": "error", "message": "frames must be objects"})
        return

    event = message.get("event") or message.get("type")
    if event == "ping":
        await websocket.send_json({"event": "pong"})
        return

    notification_id = message.get("id")
    if event in ("ack", "mark_read") and not notification_id:
        await websocket.send_json({"event": "error", "message": f"{event} requires an id"})
        return

    try:
        if event == "ack":
            await runtime.notifications.acknowledge(notification_id, recipient)
            await websocket.send_json({"event": "ack", "id": notification_id})
        elif event == "mark_read":
            await runtime.notifications.mark_read(notification_id, recipient, True)
            await websocket.send_json({"event": "read", "id": notification_id})
        else:
            await websocket.send_json({"event": "error", "message": f"unknown event {event!r}"})
    except ServiceError as exc:
        logger.info("Realtime %s for %s rejected: %s", event, notification_id, exc.message)
        await websocket.send_json(
            {"event": "error", "id": notification_id, "code": exc.code, "message": exc.message}
        )
