"""Process-local registry of realtime sessions, grouped by recipient."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from collections import defaultdict
from typing import Any, DefaultDict, Protocol, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class SessionHandle(Protocol):
    """One realtime connection."""

    id: str

    async def send_json(self, payload: dict[str, Any]) -> None: ...


class WebSocketSession:
    """Session handle backed by a FastAPI websocket."""

    def __init__(self, websocket: WebSocket, recipient: str) -> None:
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.recipient = recipient

    async def send_json(self, payload: dict[str, Any]) -> None:
        await self.websocket.send_json(payload)

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, WebSocketSession) and other.id == self.id


class _Shard:
    def __init__(self) -> None:
        self.sessions: DefaultDict[str, Set[SessionHandle]] = defaultdict(set)


class SessionRegistry:
    """
    Map ``recipient -> sessions``, sharded by a stable hash of the recipient.

    Only the sessions of this worker are visible; fan-out across workers is
    not attempted.
    """

    def __init__(self, shards: int = 16, send_timeout: float = 1.0) -> None:
        if shards < 1:
            raise ValueError("shards must be at least 1")
        self._shards = [_Shard() for _ in range(shards)]
        self.send_timeout = send_timeout

    def _shard(self, recipient: str) -> _Shard:
        digest = hashlib.blake2b(recipient.encode(), digest_size=8).digest()
        return self._shards[int.from_bytes(digest, "big") % len(self._shards)]

    def attach(self, recipient: str, handle: SessionHandle) -> None:
        """Register ``handle`` for ``recipient``."""
        self._shard(recipient).sessions[recipient].add(handle)
        logger.info("Realtime session %s attached for recipient %s", handle.id, recipient)

    def detach(self, recipient: str, handle: SessionHandle) -> None:
        """Remove ``handle`` from the pool for ``recipient``."""
        shard = self._shard(recipient)
        sessions = shard.sessions.get(recipient)
        if sessions is None:
            return
        sessions.discard(handle)
        if not sessions:
            shard.sessions.pop(recipient, None)
        logger.info("Realtime session %s detached for recipient %s", handle.id, recipient)

    def sessions_for(self, recipient: str) -> list[SessionHandle]:
        return list(self._shard(recipient).sessions.get(recipient, ()))

    def is_connected(self, recipient: str) -> bool:
        return bool(self._shard(recipient).sessions.get(recipient))

    @property
    def recipient_count(self) -> int:
        return sum(len(shard.sessions) for shard in self._shards)

    @property
    def session_count(self) -> int:
        return sum(
            len(handles) for shard in self._shards for handles in shard.sessions.values()
        )

    async def broadcast(self, recipient: str, payload: dict[str, Any]) -> int:
        """
        Send ``payload`` to every session of ``recipient``.

        Returns how many sessions received it. A failing session is logged
        and detached; failures never reach the caller.
        """
        handles = self.sessions_for(recipient)
        if not handles:
            return 0

        results = await asyncio.gather(
            *(self._send(handle, payload) for handle in handles),
            return_exceptions=True,
        )
        delivered = 0
        for handle, result in zip(handles, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Realtime send to session %s failed (%s); detaching",
                    handle.id,
                    result.__class__.__name__,
                )
                self.detach(recipient, handle)
            else:
                delivered += 1
        return delivered

    async def _send(self, handle: SessionHandle, payload: dict[str, Any]) -> None:
        await asyncio.wait_for(handle.send_json(payload), timeout=self.send_timeout)
