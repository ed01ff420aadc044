from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from starlette.concurrency import run_in_threadpool
from starlette.responses import StreamingResponse

from niya.api.dependencies import get_chat_store, get_current_user
from niya.core.dependencies import get_orchestrator
from niya.core.exceptions import NotFoundError
from niya.models.chat import Chat
from niya.models.user import User
from niya.schemas.chat import (
    ChatDetail,
    ChatSummary,
    CreateChatRequest,
    MarkMessagesReadRequest,
    MessageRecord,
    PaginatedMessages,
    SendMessageRequest,
    UpdateChatRequest,
)
from niya.services.chat_store import ChatStore
from niya.services.delivery import (
    DeliveryRun,
    MessageDeliveryOrchestrator,
    NullSink,
    Pacer,
    SendRequest,
)
from niya.services.personas import resolve_persona
from niya.services.streaming import stream_delivery

router = APIRouter(prefix="/chats", tags=["chats"])


def _ok(data: Any, **extra: Any) -> dict[str, Any]:
    return {"success": True, "data": data, **extra}


def _owned_chat(store: ChatStore, chat_id: str, user: User) -> Chat:
    chat = store.find_chat(chat_id, user.id)
    if chat is None:
        raise NotFoundError("Chat not found", details={"chatId": chat_id})
    return chat


async def _send(
    orchestrator: MessageDeliveryOrchestrator,
    store: ChatStore,
    chat_id: str,
    user: User,
    payload: SendMessageRequest,
) -> DeliveryRun:
    await run_in_threadpool(_owned_chat, store, chat_id, user)
    run = orchestrator.start(
        SendRequest(
            chat_id=chat_id,
            user_id=user.id,
            agent_id=payload.agent_id,
            content=payload.content,
        )
    )
    # The plain REST call persists every segment before answering, without pacing.
    return await orchestrator.deliver(run, NullSink(), pacer=Pacer.immediate())


def _primary_payload(run: DeliveryRun) -> dict[str, Any]:
    assert run.primary is not None
    data = MessageRecord.from_model(run.primary).wire()
    segments = list(run.reply.segments) if run.reply is not None else [run.primary.content]
    data["isMultiMessage"] = len(segments) > 1
    data["additionalMessages"] = segments[1:]
    return data


@router.get("")
def list_chats(
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
) -> dict[str, Any]:
    rows = store.list_chats(user.id)
    return _ok([ChatSummary.from_model(chat, message_count=n).wire() for chat, n in rows])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_chat(
    payload: CreateChatRequest,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
) -> dict[str, Any]:
    persona = resolve_persona(payload.agent_id)
    chat = store.create_chat(
        user_id=user.id, agent_id=persona.value, title=f"New {persona.value} chat"
    )
    return _ok(ChatSummary.from_model(chat).wire())


@router.get("/{chat_id}")
def get_chat(
    chat_id: str,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
) -> dict[str, Any]:
    chat = _owned_chat(store, chat_id, user)
    messages = store.list_messages(chat.id)
    detail = ChatDetail(
        chat_id=chat.id,
        messages=[MessageRecord.from_model(m) for m in messages],
        is_loading=False,
        has_new_messages=False,
        poll_count=0,
    )
    return _ok(detail.wire())


@router.patch("/{chat_id}")
def update_chat(
    chat_id: str,
    payload: UpdateChatRequest,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
) -> dict[str, Any]:
    chat = _owned_chat(store, chat_id, user)
    chat = store.update_chat_title(chat, payload.title)
    return _ok(ChatSummary.from_model(chat).wire())


@router.delete("/{chat_id}")
def delete_chat(
    chat_id: str,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
) -> dict[str, Any]:
    chat = _owned_chat(store, chat_id, user)
    store.delete_chat(chat)
    return {"success": True}


@router.post("/{chat_id}/messages")
async def send_message(
    chat_id: str,
    payload: SendMessageRequest,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
    orchestrator: MessageDeliveryOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    run = await _send(orchestrator, store, chat_id, user, payload)
    data = _primary_payload(run)
    if data["isMultiMessage"]:
        return _ok(
            data,
            messages=[m.content for m in run.assistant_messages],
            isMultiMessage=True,
            totalMessages=len(run.assistant_messages),
        )
    return _ok(data)


@router.post("/{chat_id}/messages/multi")
async def send_multi_message(
    chat_id: str,
    payload: SendMessageRequest,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
    orchestrator: MessageDeliveryOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    run = await _send(orchestrator, store, chat_id, user, payload)
    return _ok(
        {
            "messages": [m.content for m in run.assistant_messages],
            "isMultiMessage": len(run.assistant_messages) > 1,
            "primaryMessage": _primary_payload(run),
            "totalMessages": len(run.assistant_messages),
        }
    )


@router.post("/{chat_id}/messages/stream")
async def stream_message(
    chat_id: str,
    payload: SendMessageRequest,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
    orchestrator: MessageDeliveryOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Send a message and stream the reply segments as Server-Sent Events.

    Rejections (unknown chat, bad agent id, rate limit) are ordinary HTTP errors;
    once the stream is open, failures arrive as a single `error` frame.
    """

    await run_in_threadpool(_owned_chat, store, chat_id, user)
    run = orchestrator.start(
        SendRequest(
            chat_id=chat_id,
            user_id=user.id,
            agent_id=payload.agent_id,
            content=payload.content,
        )
    )
    await orchestrator.validate(run)

    resp = StreamingResponse(stream_delivery(orchestrator, run), media_type="text/event-stream")
    resp.headers["Cache-Control"] = "no-cache"
    resp.headers["X-Accel-Buffering"] = "no"
    return resp


@router.get("/{chat_id}/messages")
def list_messages(
    chat_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
) -> dict[str, Any]:
    chat = _owned_chat(store, chat_id, user)
    offset = (page - 1) * limit
    newest = store.list_messages(chat.id, newest_first=True, offset=offset, limit=limit)
    total = store.count_messages(chat.id)
    result = PaginatedMessages(
        messages=[MessageRecord.from_model(m) for m in reversed(newest)],
        has_more=offset + len(newest) < total,
        total=total,
    )
    return _ok(result.wire())


@router.get("/{chat_id}/messages/poll")
def poll_messages(
    chat_id: str,
    last_message_id: str | None = Query(default=None, alias="lastMessageId"),
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
) -> dict[str, Any]:
    chat = _owned_chat(store, chat_id, user)
    messages = store.messages_after(chat.id, last_message_id)
    return _ok([MessageRecord.from_model(m).wire() for m in messages])


@router.post("/{chat_id}/messages/read")
def mark_messages_read(
    chat_id: str,
    payload: MarkMessagesReadRequest,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
) -> dict[str, Any]:
    chat = _owned_chat(store, chat_id, user)
    updated = store.mark_messages_read(chat.id, payload.message_ids)
    return {"success": True, "updated": updated}


__all__ = ["router"]
