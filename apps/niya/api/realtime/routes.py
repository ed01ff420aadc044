from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from niya.core.dependencies import get_gateway
from niya.services.auth import bearer_token
from niya.services.realtime.connections import WebSocketTransport
from niya.services.realtime.gateway import RealtimeGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    token: str | None = Query(default=None),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> None:
    await websocket.accept()
    transport = WebSocketTransport(websocket)
    credential = token or bearer_token(websocket.headers.get("authorization"))
    info = await gateway.connect(transport, credential)
    if info is None:
        return
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except ValueError:
                await gateway.send_error(info.connection_id, "Invalid event format")
                continue
            gateway.dispatch(info.connection_id, payload)
    except WebSocketDisconnect:
        logger.info("Socket %s disconnected", info.connection_id)
    finally:
        transport.mark_closed()
        gateway.disconnect(info.connection_id)


__all__ = ["router"]
