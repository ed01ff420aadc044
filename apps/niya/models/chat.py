"""Conversation and message tables."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlmodel import Field

from niya.core.utils import utcnow_naive
from niya.models.base import UUIDModel


class Chat(UUIDModel, table=True):
    """A conversation between one user and one persona."""

    __tablename__ = "chats"
    __table_args__ = (
        Index("ix_chats_user_id", "user_id"),
        Index("ix_chats_user_updated", "user_id", "updated_at"),
    )

    user_id: int = Field(sa_column=Column(Integer, ForeignKey("users.id"), nullable=False))
    agent_id: str = Field(sa_column=Column(String(64), nullable=False))
    title: str = Field(sa_column=Column(String(255), nullable=False))
    message_count: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    last_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class Message(UUIDModel, table=True):
    """One persisted chat message; `meta` carries read/segment linkage flags."""

    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_chat_timestamp", "chat_id", "timestamp"),)

    chat_id: str = Field(
        sa_column=Column(String(32), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    )
    user_id: int = Field(sa_column=Column(Integer, nullable=False))
    agent_id: str = Field(sa_column=Column(String(64), nullable=False))
    role: str = Field(sa_column=Column(String(16), nullable=False))
    content: str = Field(sa_column=Column(Text, nullable=False))
    timestamp: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )
    meta: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))


__all__ = ["Chat", "Message"]
