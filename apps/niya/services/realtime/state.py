"""Process-wide realtime state, constructed once per app."""

from __future__ import annotations

import asyncio
import time
import weakref
from typing import Any

from niya.core.rate_limit import FixedWindowRateLimiter, RateLimitPolicy
from niya.core.settings import Settings
from niya.services.realtime.connections import ConnectionRegistry
from niya.services.realtime.rooms import RoomRouter


class RealtimeState:
    def __init__(
        self,
        *,
        rate_limiter: FixedWindowRateLimiter | None = None,
        started_at: float | None = None,
    ) -> None:
        self.registry = ConnectionRegistry()
        self.router = RoomRouter(self.registry)
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter()
        self.started_at = started_at if started_at is not None else time.time()
        # Locks are dropped once no send holds or awaits them.
        self._pair_locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> RealtimeState:
        policy = RateLimitPolicy(
            max_events=settings.rate_limit_max_events,
            window_s=settings.rate_limit_window_seconds,
        )
        return cls(rate_limiter=FixedWindowRateLimiter(policy))

    def lock_for(self, chat_id: str, agent_id: str) -> asyncio.Lock:
        """Serializes sends for one (chat, agent) pair."""

        key = (chat_id, agent_id)
        lock = self._pair_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._pair_locks[key] = lock
        return lock

    def uptime(self) -> float:
        return max(0.0, time.time() - self.started_at)

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "connections": len(self.registry),
            "activeChats": self.router.room_count(),
            "uptime": round(self.uptime(), 3),
        }


__all__ = ["RealtimeState"]
