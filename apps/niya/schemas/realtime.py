"""Socket protocol frames.

Every frame, in both directions, is a JSON object `{type, data, timestamp}`;
inbound frames may omit `timestamp`.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field, StrictBool

from niya.core.utils import epoch_ms
from niya.schemas.chat import CamelModel


class InboundFrame(CamelModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class MessageEvent(CamelModel):
    chat_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    agent_id: str = Field(min_length=1)
    message_id: str | None = None


class TypingEvent(CamelModel):
    chat_id: str = Field(min_length=1)
    agent_id: str = Field(min_length=1)
    is_typing: StrictBool


class ReadReceiptEvent(CamelModel):
    chat_id: str = Field(min_length=1)
    message_ids: list[str]


class ChatUpdateEvent(CamelModel):
    action: Literal["join", "leave"]
    chat_id: str = Field(min_length=1)


def envelope(type_: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build an outbound frame."""

    return {"type": type_, "data": data or {}, "timestamp": epoch_ms()}


def error_envelope(message: str, code: int = 400, **extra: Any) -> dict[str, Any]:
    data: dict[str, Any] = {"errorMessage": message, "code": code}
    data.update(extra)
    return envelope("error", data)


__all__ = [
    "ChatUpdateEvent",
    "InboundFrame",
    "MessageEvent",
    "ReadReceiptEvent",
    "TypingEvent",
    "envelope",
    "error_envelope",
]
