"""Realtime session tracking."""

from notification_service.realtime.registry import SessionRegistry, WebSocketSession

__all__ = ["SessionRegistry", "WebSocketSession"]
