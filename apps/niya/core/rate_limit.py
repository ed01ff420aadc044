from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    max_events: int
    window_s: float


DEFAULT_POLICY = RateLimitPolicy(max_events=100, window_s=60.0)


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """In-process fixed-window counter keyed by (identity, category).

    A window opens on the first event for a key and lasts `window_s`; the count
    is reset lazily on the first check after the window has elapsed. Rejected
    checks still consume the window but never make the count negative.
    """

    def __init__(
        self,
        policy: RateLimitPolicy = DEFAULT_POLICY,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy
        self._clock = clock
        self._lock = Lock()
        self._windows: dict[tuple[str, str], _Window] = {}

    def check(self, identity: str | int, category: str) -> bool:
        key = (str(identity), category)
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = _Window(count=0, reset_at=now + self.policy.window_s)
                self._windows[key] = window
            window.count += 1
            allowed = window.count <= self.policy.max_events

        if not allowed:
            logger.info("Rate limit exceeded for %s (%s)", identity, category)
        return allowed

    def retry_after(self, identity: str | int, category: str) -> float:
        """Seconds until the current window for the key resets (0 when open)."""

        with self._lock:
            window = self._windows.get((str(identity), category))
            if window is None:
                return 0.0
            return max(0.0, window.reset_at - self._clock())

    def count(self, identity: str | int, category: str) -> int:
        with self._lock:
            window = self._windows.get((str(identity), category))
            return window.count if window else 0

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
