"""Pydantic schemas shared across the app."""

from .chat import (
    ChatDetail,
    ChatSummary,
    CreateChatRequest,
    MarkMessagesReadRequest,
    MessageRecord,
    PaginatedMessages,
    SendMessageRequest,
    UpdateChatRequest,
)
from .realtime import envelope, error_envelope

__all__ = [
    "ChatDetail",
    "ChatSummary",
    "CreateChatRequest",
    "MarkMessagesReadRequest",
    "MessageRecord",
    "PaginatedMessages",
    "SendMessageRequest",
    "UpdateChatRequest",
    "envelope",
    "error_envelope",
]
