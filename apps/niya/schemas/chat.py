from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from niya.models.chat import Chat, Message


class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# --- Requests ---


class CreateChatRequest(CamelModel):
    agent_id: str = Field(min_length=1)


class SendMessageRequest(CamelModel):
    content: str
    agent_id: str

    @field_validator("content", "agent_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value


class UpdateChatRequest(CamelModel):
    title: str = Field(min_length=1, max_length=255)


class MarkMessagesReadRequest(CamelModel):
    message_ids: list[str]


# --- Records ---


class MessageRecord(CamelModel):
    id: str
    chat_id: str
    user_id: int
    agent_id: str
    content: str
    role: str
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_model(cls, message: Message) -> MessageRecord:
        return cls(
            id=message.id,
            chat_id=message.chat_id,
            user_id=message.user_id,
            agent_id=message.agent_id,
            content=message.content,
            role=message.role,
            timestamp=_aware(message.timestamp),
            metadata=dict(message.meta or {}),
        )


class ChatSummary(CamelModel):
    id: str
    user_id: int
    agent_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    last_message: str | None = None

    @classmethod
    def from_model(cls, chat: Chat, *, message_count: int | None = None) -> ChatSummary:
        return cls(
            id=chat.id,
            user_id=chat.user_id,
            agent_id=chat.agent_id,
            title=chat.title,
            created_at=_aware(chat.created_at),
            updated_at=_aware(chat.updated_at),
            message_count=chat.message_count if message_count is None else message_count,
            last_message=chat.last_message,
        )


class ChatDetail(CamelModel):
    chat_id: str
    messages: list[MessageRecord]
    is_loading: bool = False
    has_new_messages: bool = False
    poll_count: int = 0


class PaginatedMessages(CamelModel):
    messages: list[MessageRecord]
    has_more: bool
    total: int


__all__ = [
    "CamelModel",
    "ChatDetail",
    "ChatSummary",
    "CreateChatRequest",
    "MarkMessagesReadRequest",
    "MessageRecord",
    "PaginatedMessages",
    "SendMessageRequest",
    "UpdateChatRequest",
]
