"""Chat rooms: the set of live connections subscribed to each conversation."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from niya.services.realtime.connections import ConnectionRegistry

logger = logging.getLogger(__name__)


class RoomRouter:
    """Tracks room membership and fans envelopes out to room members.

    Rooms are created on first join and dropped once empty. Membership is
    mirrored on `ConnectionInfo.joined_chats` so a disconnect can leave every
    room it joined.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        self._rooms: dict[str, set[str]] = {}
        registry.router = self

    def join(self, connection_id: str, room_id: str) -> bool:
        info = self.registry.get(connection_id)
        if info is None:
            return False
        self._rooms.setdefault(room_id, set()).add(connection_id)
        info.joined_chats.add(room_id)
        logger.info("Connection %s joined chat %s", connection_id, room_id)
        return True

    def leave(self, connection_id: str, room_id: str) -> None:
        members = self._rooms.get(room_id)
        if members is not None:
            members.discard(connection_id)
            if not members:
                self._rooms.pop(room_id, None)
        info = self.registry.get(connection_id)
        if info is not None:
            info.joined_chats.discard(room_id)
        logger.debug("Connection %s left chat %s", connection_id, room_id)

    def members(self, room_id: str) -> set[str]:
        return set(self._rooms.get(room_id, ()))

    def is_member(self, connection_id: str, room_id: str) -> bool:
        return connection_id in self._rooms.get(room_id, ())

    def room_count(self) -> int:
        return len(self._rooms)

    def room_ids(self) -> list[str]:
        return list(self._rooms)

    async def broadcast(
        self,
        room_id: str,
        envelope: dict[str, Any],
        *,
        exclude: Iterable[str] = (),
    ) -> int:
        """Send to every open member of the room; returns how many were reached."""

        skip = set(exclude)
        targets = [cid for cid in self._rooms.get(room_id, ()) if cid not in skip]
        if not targets:
            return 0

        delivered = 0
        for connection_id in targets:
            info = self.registry.get(connection_id)
            if info is None or not info.is_open:
                continue
            try:
                await info.transport.send(envelope)
            except Exception as exc:
                logger.warning(
                    "Broadcast of %s to %s in chat %s failed: %s",
                    envelope.get("type"),
                    connection_id,
                    room_id,
                    exc,
                )
                continue
            delivered += 1
        return delivered


__all__ = ["RoomRouter"]
