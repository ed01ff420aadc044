"""Socket protocol handler.

Authenticates connections, dispatches inbound `{type, data}` frames, and turns
every handler failure into a single `error` frame for the originating
connection. Authentication failures close the socket; nothing else does.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import AbstractContextManager
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from niya.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    NiyaException,
    RateLimitError,
    ValidationFailedError,
)
from niya.models.chat import Chat, Message
from niya.schemas.realtime import (
    ChatUpdateEvent,
    InboundFrame,
    MessageEvent,
    ReadReceiptEvent,
    TypingEvent,
    envelope,
    error_envelope,
)
from niya.services.auth import SessionAuthenticator
from niya.services.chat_store import ChatStore
from niya.services.delivery import (
    DeliveryRun,
    MessageDeliveryOrchestrator,
    SendRequest,
    assistant_flags,
    message_payload,
)
from niya.services.realtime.connections import ConnectionInfo, Transport, new_connection_id
from niya.services.realtime.state import RealtimeState

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

Handler = Callable[[ConnectionInfo, dict[str, Any]], Awaitable[None]]


class SocketSink:
    """Delivers a send's events to the sender and mirrors durable messages to the room."""

    def __init__(self, state: RealtimeState, connection_id: str) -> None:
        self.state = state
        self.connection_id = connection_id

    async def _to_sender(self, frame: dict[str, Any]) -> None:
        await self.state.registry.send_to(self.connection_id, frame)

    async def _to_sender_and_room(self, room_id: str, frame: dict[str, Any]) -> None:
        await self._to_sender(frame)
        await self.state.router.broadcast(room_id, frame, exclude={self.connection_id})

    async def optimistic(self, run: DeliveryRun, record: dict[str, Any]) -> None:
        await self._to_sender(
            envelope(
                "message",
                {
                    "chatId": run.request.chat_id,
                    "message": record,
                    "messageId": run.correlation_id,
                    "confirmed": False,
                },
            )
        )

    async def typing(self, run: DeliveryRun, is_typing: bool) -> None:
        await self._to_sender(
            envelope(
                "typing",
                {
                    "chatId": run.request.chat_id,
                    "agentId": run.request.agent_id,
                    "isTyping": is_typing,
                },
            )
        )

    async def confirmed(self, run: DeliveryRun, message: Message) -> None:
        await self._to_sender_and_room(
            run.request.chat_id,
            envelope(
                "message",
                {
                    "chatId": run.request.chat_id,
                    "message": message_payload(message),
                    "messageId": run.correlation_id,
                    "confirmed": True,
                },
            ),
        )

    async def assistant_message(
        self, run: DeliveryRun, message: Message, *, segment_index: int, total: int
    ) -> None:
        await self._to_sender_and_room(
            run.request.chat_id,
            envelope(
                "message",
                {
                    "chatId": run.request.chat_id,
                    "message": message_payload(
                        message, **assistant_flags(run, segment_index, total)
                    ),
                    "messageId": run.reply_correlation_id(segment_index),
                },
            ),
        )


def _parse(model: type[M], data: dict[str, Any], message: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailedError(message, details=exc.errors(include_url=False)) from exc


class RealtimeGateway:
    def __init__(
        self,
        *,
        state: RealtimeState,
        stores: Callable[[], AbstractContextManager[ChatStore]],
        authenticator: SessionAuthenticator,
        orchestrator: MessageDeliveryOrchestrator,
        keepalive_seconds: float = 30.0,
    ) -> None:
        self.state = state
        self.stores = stores
        self.authenticator = authenticator
        self.orchestrator = orchestrator
        self.keepalive_seconds = keepalive_seconds
        self._tasks: set[asyncio.Task] = set()
        self._keepalive: asyncio.Task | None = None
        self._handlers: dict[str, Handler] = {
            "message": self.on_message,
            "typing": self.on_typing,
            "read_receipt": self.on_read_receipt,
            "chat_update": self.on_chat_update,
            "ping": self.on_ping,
        }

    async def _store(self, op: Callable[[ChatStore], T]) -> T:
        def _run() -> T:
            with self.stores() as store:
                return op(store)

        return await run_in_threadpool(_run)

    # --- Connection lifecycle ---

    async def connect(self, transport: Transport, token: str | None) -> ConnectionInfo | None:
        """Authenticate and register a connection, or report the failure and close it."""

        try:
            user = await self._store(lambda s: self.authenticator.authenticate(token, s))
            await self._store(lambda s: s.touch_user_activity(user.id))
        except AuthenticationError as exc:
            logger.warning("Socket connection rejected: %s", exc.message)
            try:
                await transport.send(error_envelope(exc.message, exc.status_code))
            finally:
                await transport.close(code=1008, reason=exc.message)
            return None

        connection_id = new_connection_id()
        info = ConnectionInfo(connection_id=connection_id, user_id=user.id, transport=transport)
        self.state.registry.add(connection_id, info)
        await self.state.registry.send_to(
            connection_id,
            envelope(
                "connected",
                {"userId": user.id, "connectionId": connection_id, "status": "connected"},
            ),
        )
        return info

    def disconnect(self, connection_id: str) -> None:
        self.state.registry.remove(connection_id)

    # --- Dispatch ---

    def dispatch(self, connection_id: str, raw: Any) -> asyncio.Task:
        """Handle one inbound frame as its own task so slow sends don't block the socket."""

        task = asyncio.create_task(self.handle_frame(connection_id, raw))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def handle_frame(self, connection_id: str, raw: Any) -> None:
        try:
            info = self.state.registry.get(connection_id)
            if info is None:
                raise ValidationFailedError("Connection not found")
            if not isinstance(raw, dict):
                raise ValidationFailedError("Invalid event format")
            frame = _parse(InboundFrame, raw, "Invalid event format")
            handler = self._handlers.get(frame.type)
            if handler is None:
                raise ValidationFailedError(
                    f"Unknown event type: {frame.type}", details={"type": frame.type}
                )
            await handler(info, frame.data)
        except NiyaException as exc:
            await self.send_error(connection_id, exc.message, exc)
        except Exception:
            logger.exception("Unhandled error processing frame from %s", connection_id)
            await self.send_error(connection_id, "Failed to process event", code=500)

    async def send_error(
        self,
        connection_id: str,
        message: str,
        exc: NiyaException | None = None,
        *,
        code: int | None = None,
    ) -> None:
        extra: dict[str, Any] = {}
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            extra["retryAfter"] = round(exc.retry_after, 3)
        status = code if code is not None else (exc.status_code if exc is not None else 400)
        await self.state.registry.send_to(
            connection_id, error_envelope(message, status, **extra)
        )

    async def _owned_chat(self, info: ConnectionInfo, chat_id: str) -> Chat:
        chat = await self._store(lambda s: s.find_chat(chat_id, info.user_id))
        if chat is None:
            raise AuthorizationError("Access denied to chat", details={"chatId": chat_id})
        return chat

    # --- Handlers ---

    async def on_message(self, info: ConnectionInfo, data: dict[str, Any]) -> None:
        event = _parse(MessageEvent, data, "Invalid message format")
        run = self.orchestrator.start(
            SendRequest(
                chat_id=event.chat_id,
                user_id=info.user_id,
                agent_id=event.agent_id,
                content=event.content,
                client_message_id=event.message_id,
            )
        )
        try:
            await self.orchestrator.deliver(run, SocketSink(self.state, info.connection_id))
        except NiyaException as exc:
            if run.rejected:
                raise
            await self.send_error(info.connection_id, "Failed to process message", exc)
        except Exception:
            logger.exception("Send failed in chat %s", event.chat_id)
            await self.send_error(info.connection_id, "Failed to process message", code=500)

    async def on_typing(self, info: ConnectionInfo, data: dict[str, Any]) -> None:
        event = _parse(TypingEvent, data, "Invalid typing event format")
        await self._owned_chat(info, event.chat_id)
        await self.state.router.broadcast(
            event.chat_id,
            envelope(
                "typing",
                {
                    "chatId": event.chat_id,
                    "userId": info.user_id,
                    "agentId": event.agent_id,
                    "isTyping": event.is_typing,
                },
            ),
        )

    async def on_read_receipt(self, info: ConnectionInfo, data: dict[str, Any]) -> None:
        event = _parse(ReadReceiptEvent, data, "Invalid read receipt format")
        await self._owned_chat(info, event.chat_id)
        await self._store(lambda s: s.mark_messages_read(event.chat_id, event.message_ids))
        await self.state.router.broadcast(
            event.chat_id,
            envelope(
                "read_receipt",
                {
                    "chatId": event.chat_id,
                    "messageIds": event.message_ids,
                    "userId": info.user_id,
                    "confirmed": True,
                },
            ),
        )

    async def on_chat_update(self, info: ConnectionInfo, data: dict[str, Any]) -> None:
        event = _parse(ChatUpdateEvent, data, "Invalid chat update format")
        chat = await self._owned_chat(info, event.chat_id)
        if event.action == "leave":
            self.state.router.leave(info.connection_id, event.chat_id)
            return
        self.state.router.join(info.connection_id, event.chat_id)
        await self.state.registry.send_to(
            info.connection_id,
            envelope(
                "chat_update",
                {
                    "chatId": chat.id,
                    "updates": {
                        "title": chat.title,
                        "messageCount": chat.message_count,
                        "lastMessage": chat.last_message,
                    },
                },
            ),
        )

    async def on_ping(self, info: ConnectionInfo, data: dict[str, Any]) -> None:
        self.state.registry.touch_heartbeat(info.connection_id)
        await self.state.registry.send_to(info.connection_id, envelope("pong"))

    # --- Keepalive ---

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_seconds)
            sent = await self.state.registry.send_all(envelope("pong"))
            logger.debug("Keepalive pong sent to %d connection(s)", sent)

    def start_keepalive(self) -> None:
        if self.keepalive_seconds <= 0 or self._keepalive is not None:
            return
        self._keepalive = asyncio.create_task(self._keepalive_loop())

    async def stop_keepalive(self) -> None:
        task, self._keepalive = self._keepalive, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["RealtimeGateway", "SocketSink"]
