"""Live socket connections and the identity bound to each one.

All mutations happen on the event loop and never await, so each one is atomic
with respect to other socket tasks.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketState

if TYPE_CHECKING:
    from niya.services.realtime.rooms import RoomRouter

logger = logging.getLogger(__name__)


class Transport(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send(self, envelope: dict[str, Any]) -> None: ...

    async def close(self, code: int = 1008, reason: str | None = None) -> None: ...


class WebSocketTransport:
    """Adapts a Starlette WebSocket to the `Transport` protocol."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, envelope: dict[str, Any]) -> None:
        await self.websocket.send_json(envelope)

    async def close(self, code: int = 1008, reason: str | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        if self.websocket.application_state == WebSocketState.CONNECTED:
            await self.websocket.close(code=code, reason=reason)

    def mark_closed(self) -> None:
        self._closed = True


def new_connection_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ConnectionInfo:
    connection_id: str
    user_id: int
    transport: Transport
    joined_chats: set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)
    last_ping: float = field(default_factory=time.time)

    @property
    def is_open(self) -> bool:
        return self.transport.is_open


class ConnectionRegistry:
    """connection id -> `ConnectionInfo` for every authenticated socket."""

    def __init__(self) -> None:
        self._connections: dict[str, ConnectionInfo] = {}
        self.router: RoomRouter | None = None

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def add(self, connection_id: str, info: ConnectionInfo) -> None:
        self._connections[connection_id] = info
        logger.info("Connection %s registered for user %s", connection_id, info.user_id)

    def get(self, connection_id: str) -> ConnectionInfo | None:
        return self._connections.get(connection_id)

    def remove(self, connection_id: str) -> ConnectionInfo | None:
        """Leave every joined room, then forget the connection. Unknown ids are ignored."""

        info = self._connections.get(connection_id)
        if info is None:
            return None
        if self.router is not None:
            for room_id in list(info.joined_chats):
                self.router.leave(connection_id, room_id)
        self._connections.pop(connection_id, None)
        logger.info("Connection %s removed (user %s)", connection_id, info.user_id)
        return info

    def touch_heartbeat(self, connection_id: str) -> None:
        info = self._connections.get(connection_id)
        if info is not None:
            info.last_ping = time.time()

    def connection_ids(self) -> list[str]:
        return list(self._connections)

    def stats(self) -> dict[str, Any]:
        return {
            "connections": len(self._connections),
            "rooms": self.router.room_count() if self.router is not None else 0,
            "connectionIds": self.connection_ids(),
        }

    async def send_to(self, connection_id: str, envelope: dict[str, Any]) -> bool:
        """Deliver to one connection; absent or closed connections are a silent no-op."""

        info = self._connections.get(connection_id)
        if info is None or not info.is_open:
            return False
        try:
            await info.transport.send(envelope)
        except Exception as exc:
            logger.warning("Send to connection %s failed: %s", connection_id, exc)
            return False
        return True

    async def send_all(self, envelope: dict[str, Any]) -> int:
        delivered = 0
        for connection_id in self.connection_ids():
            if await self.send_to(connection_id, envelope):
                delivered += 1
        return delivered


__all__ = [
    "ConnectionInfo",
    "ConnectionRegistry",
    "Transport",
    "WebSocketTransport",
    "new_connection_id",
]
