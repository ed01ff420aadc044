from __future__ import annotations

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def utcnow_naive() -> datetime:
    """Return the current time as a naive UTC datetime (the format stored in the DB)."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_ms() -> int:
    """Milliseconds since the epoch, used for envelope timestamps and temp ids."""

    return int(time.time() * 1000)


def snippet(text: str, limit: int = 200) -> str:
    """Trim text for `last_message` style summaries."""

    text = (text or "").strip()
    return text if len(text) <= limit else text[: limit - 1].rstrip() + "…"


__all__ = ["epoch_ms", "snippet", "utcnow", "utcnow_naive"]
