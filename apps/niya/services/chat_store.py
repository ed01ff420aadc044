"""Persistence for users, chats, and messages.

The realtime core treats this as an opaque store: it only relies on the
operations below. Every write commits immediately; SQLAlchemy failures are
rolled back and surfaced as `PersistenceError`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from niya.core.exceptions import PersistenceError
from niya.core.utils import snippet, utcnow_naive
from niya.models.chat import Chat, Message
from niya.models.user import User

logger = logging.getLogger(__name__)


@dataclass
class ChatStore:
    """Encapsulates chat/message CRUD so handlers and the orchestrator stay thin."""

    session: Session

    @contextmanager
    def _writing(self, what: str) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Failed to %s", what)
            raise PersistenceError(f"Failed to {what}") from exc

    # Users
    def get_user(self, user_id: int) -> User | None:
        return self.session.get(User, user_id)

    def touch_user_activity(self, user_id: int) -> None:
        with self._writing("update user activity"):
            user = self.session.get(User, user_id)
            if user is not None:
                user.last_active_at = utcnow_naive()
                self.session.add(user)

    # Chats
    def list_chats(self, user_id: int) -> list[tuple[Chat, int]]:
        """Chats for a user, most recently updated first, with live message counts."""

        counts = (
            select(Message.chat_id, func.count().label("n"))
            .group_by(Message.chat_id)
            .subquery()
        )
        stmt = (
            select(Chat, func.coalesce(counts.c.n, 0))
            .outerjoin(counts, counts.c.chat_id == Chat.id)
            .where(Chat.user_id == user_id)
            .order_by(Chat.updated_at.desc())
        )
        return [(chat, int(n)) for chat, n in self.session.exec(stmt).all()]

    def create_chat(self, *, user_id: int, agent_id: str, title: str) -> Chat:
        chat = Chat(user_id=user_id, agent_id=agent_id, title=title.strip(), message_count=0)
        with self._writing("create chat"):
            self.session.add(chat)
        self.session.refresh(chat)
        return chat

    def find_chat(self, chat_id: str, user_id: int) -> Chat | None:
        """Fetch a chat only if it belongs to `user_id`."""

        stmt = select(Chat).where(Chat.id == chat_id, Chat.user_id == user_id)
        return self.session.exec(stmt).first()

    def update_chat_title(self, chat: Chat, title: str) -> Chat:
        with self._writing("update chat"):
            chat.title = title.strip()
            chat.updated_at = utcnow_naive()
            self.session.add(chat)
        self.session.refresh(chat)
        return chat

    def delete_chat(self, chat: Chat) -> None:
        with self._writing("delete chat"):
            for message in self.session.exec(select(Message).where(Message.chat_id == chat.id)):
                self.session.delete(message)
            self.session.delete(chat)

    def record_chat_activity(self, chat_id: str, last_message: str) -> Chat | None:
        """Bump the running message count and refresh the snippet and timestamp."""

        with self._writing("update chat summary"):
            chat = self.session.get(Chat, chat_id)
            if chat is None:
                return None
            chat.message_count = (chat.message_count or 0) + 1
            chat.last_message = snippet(last_message)
            chat.updated_at = utcnow_naive()
            self.session.add(chat)
        return chat

    # Messages
    def _latest_timestamp(self, chat_id: str):
        stmt = select(func.max(Message.timestamp)).where(Message.chat_id == chat_id)
        return self.session.exec(stmt).one()

    def create_message(
        self,
        *,
        chat_id: str,
        user_id: int,
        agent_id: str,
        role: str,
        content: str,
        meta: dict[str, Any] | None = None,
    ) -> Message:
        """Append a message; timestamps within a chat strictly increase."""

        now = utcnow_naive()
        with self._writing("create message"):
            latest = self._latest_timestamp(chat_id)
            if latest is not None and now <= latest:
                now = latest + timedelta(microseconds=1)
            message = Message(
                chat_id=chat_id,
                user_id=user_id,
                agent_id=agent_id,
                role=role,
                content=content,
                timestamp=now,
                meta=dict(meta or {}),
            )
            self.session.add(message)
        self.session.refresh(message)
        return message

    def get_message(self, message_id: str) -> Message | None:
        return self.session.get(Message, message_id)

    def count_messages(self, chat_id: str) -> int:
        stmt = select(func.count()).select_from(Message).where(Message.chat_id == chat_id)
        return int(self.session.exec(stmt).one())

    def list_messages(
        self,
        chat_id: str,
        *,
        newest_first: bool = False,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Message]:
        order = Message.timestamp.desc() if newest_first else Message.timestamp.asc()
        stmt = select(Message).where(Message.chat_id == chat_id).order_by(order).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.exec(stmt))

    def recent_messages(self, chat_id: str, limit: int) -> list[Message]:
        """The `limit` most recent messages, oldest first."""

        if limit <= 0:
            return []
        newest = self.list_messages(chat_id, newest_first=True, limit=limit)
        return list(reversed(newest))

    def messages_after(self, chat_id: str, last_message_id: str | None) -> list[Message]:
        """Messages newer than `last_message_id` (all messages when unknown/absent)."""

        stmt = select(Message).where(Message.chat_id == chat_id)
        if last_message_id:
            last = self.session.get(Message, last_message_id)
            if last is not None and last.chat_id == chat_id:
                stmt = stmt.where(Message.timestamp > last.timestamp)
        return list(self.session.exec(stmt.order_by(Message.timestamp.asc())))

    def mark_messages_read(self, chat_id: str, message_ids: list[str]) -> int:
        """Merge `read: true` into each message's metadata; returns rows touched."""

        if not message_ids:
            return 0
        stmt = select(Message).where(Message.chat_id == chat_id, Message.id.in_(message_ids))
        updated = 0
        with self._writing("mark messages read"):
            for message in self.session.exec(stmt):
                message.meta = {**(message.meta or {}), "read": True}
                self.session.add(message)
                updated += 1
        return updated


class ChatStoreFactory:
    """Opens a short-lived `ChatStore` per unit of work.

    Used by code that runs outside a request (socket events, delivery runs),
    where a session must not outlive a single store call.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    @contextmanager
    def __call__(self) -> Iterator[ChatStore]:
        session = self.session_factory()
        try:
            yield ChatStore(session)
        finally:
            session.close()


__all__ = ["ChatStore", "ChatStoreFactory"]
