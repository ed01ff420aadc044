from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from niya.core.dependencies import get_realtime_state
from niya.services.realtime.state import RealtimeState

router = APIRouter(tags=["health"])


@router.get("/healthz")
def health() -> dict[str, bool]:
    return {"ok": True}


@router.get("/chats/ws/health")
def socket_health(state: RealtimeState = Depends(get_realtime_state)) -> dict[str, Any]:
    """Live socket connection and active chat-room counts."""
    return state.health()


__all__ = ["router"]
