"""Message delivery: one user send, from validation to the last reply segment.

The same flow backs the socket gateway, the SSE stream, and the plain REST
call. Each transport supplies an `EventSink`; the orchestrator decides what
happens and when, the sink decides how (and whether) it reaches a client.

State progression for a run::

    VALIDATING -> PERSISTING_USER -> AWAITING_UPSTREAM -> PERSISTING_REPLY
               -> EMITTING_PRIMARY -> EMITTING_ADDITIONAL -> DONE

with REJECTED reachable only from VALIDATING and ERRORED from anywhere after it.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from collections.abc import Awaitable, Callable, Iterable
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Protocol, TypeVar, Union

from starlette.concurrency import run_in_threadpool

from niya.core.exceptions import (
    AuthorizationError,
    NiyaException,
    RateLimitError,
    ValidationFailedError,
)
from niya.core.rate_limit import FixedWindowRateLimiter
from niya.core.settings import Settings
from niya.core.utils import epoch_ms, utcnow
from niya.models.chat import Chat, Message
from niya.schemas.chat import MessageRecord
from niya.services.ai_client import AIClient, AIReply
from niya.services.chat_store import ChatStore
from niya.services.personas import Persona, resolve_persona, system_prompt_for

logger = logging.getLogger(__name__)

T = TypeVar("T")

ASSISTANT_CONFIDENCE = 0.9


class DeliveryState(str, Enum):
    VALIDATING = "validating"
    PERSISTING_USER = "persisting_user"
    AWAITING_UPSTREAM = "awaiting_upstream"
    PERSISTING_REPLY = "persisting_reply"
    EMITTING_PRIMARY = "emitting_primary"
    EMITTING_ADDITIONAL = "emitting_additional"
    DONE = "done"
    ERRORED = "errored"
    REJECTED = "rejected"


@dataclass
class SendRequest:
    chat_id: str
    user_id: int
    agent_id: str
    content: str
    client_message_id: str | None = None


@dataclass
class DeliveryRun:
    """Mutable record of one send; transports read it to shape their output."""

    request: SendRequest
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: DeliveryState = DeliveryState.VALIDATING
    temp_id: str = field(default_factory=lambda: f"temp_{epoch_ms()}")
    persona: Persona | None = None
    user_message: Message | None = None
    reply: AIReply | None = None
    assistant_messages: list[Message] = field(default_factory=list)
    validated: bool = False
    typing: bool = False
    error: BaseException | None = None

    @property
    def correlation_id(self) -> str:
        return self.request.client_message_id or self.temp_id

    def reply_correlation_id(self, segment_index: int) -> str:
        if segment_index <= 1:
            return f"{self.correlation_id}_ai"
        return f"{self.correlation_id}_ai_{segment_index - 1}"

    @property
    def total_segments(self) -> int:
        return len(self.reply.segments) if self.reply is not None else 0

    @property
    def primary(self) -> Message | None:
        return self.assistant_messages[0] if self.assistant_messages else None

    @property
    def rejected(self) -> bool:
        return self.state is DeliveryState.REJECTED

    def advance(self, state: DeliveryState) -> None:
        if state is self.state:
            return
        logger.debug(
            "Delivery %s (chat %s): %s -> %s",
            self.run_id,
            self.request.chat_id,
            self.state.value,
            state.value,
        )
        self.state = state

    def fail(self, exc: BaseException, state: DeliveryState = DeliveryState.ERRORED) -> None:
        self.error = exc
        self.advance(state)


class EventSink(Protocol):
    """Outbound side of one transport."""

    async def optimistic(self, run: DeliveryRun, record: dict[str, Any]) -> None: ...

    async def typing(self, run: DeliveryRun, is_typing: bool) -> None: ...

    async def confirmed(self, run: DeliveryRun, message: Message) -> None: ...

    async def assistant_message(
        self, run: DeliveryRun, message: Message, *, segment_index: int, total: int
    ) -> None: ...


class NullSink:
    """Sink that drops every event; used by the plain REST call."""

    async def optimistic(self, run: DeliveryRun, record: dict[str, Any]) -> None:
        return None

    async def typing(self, run: DeliveryRun, is_typing: bool) -> None:
        return None

    async def confirmed(self, run: DeliveryRun, message: Message) -> None:
        return None

    async def assistant_message(
        self, run: DeliveryRun, message: Message, *, segment_index: int, total: int
    ) -> None:
        return None


# --- Pacing ---


async def _no_sleep(_seconds: float) -> None:
    return None


class Pacer:
    """Waits between emitted events; injectable so tests never actually sleep."""

    def __init__(
        self,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._sleep = sleep
        self._uniform = uniform

    @classmethod
    def immediate(cls) -> Pacer:
        return cls(sleep=_no_sleep)

    async def wait(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)

    async def wait_between(self, low: float, high: float) -> None:
        await self.wait(self._uniform(low, high) if high > low else low)


@dataclass(frozen=True)
class PacingPolicy:
    initial_delay: float = 0.5
    segment_delay_min: float = 1.0
    segment_delay_max: float = 3.0
    typing_pause: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> PacingPolicy:
        return cls(
            initial_delay=settings.reply_initial_delay,
            segment_delay_min=settings.segment_delay_min,
            segment_delay_max=max(settings.segment_delay_min, settings.segment_delay_max),
            typing_pause=settings.segment_typing_pause,
        )


@dataclass(frozen=True)
class DelayStep:
    seconds: float
    upper: float | None = None


@dataclass(frozen=True)
class EmitStep:
    label: str
    action: Callable[[], Awaitable[Any]]


Step = Union[DelayStep, EmitStep]


async def run_pipeline(steps: Iterable[Step], pacer: Pacer) -> None:
    for step in steps:
        if isinstance(step, DelayStep):
            if step.upper is None:
                await pacer.wait(step.seconds)
            else:
                await pacer.wait_between(step.seconds, step.upper)
        else:
            await step.action()


# --- Orchestrator ---


class MessageDeliveryOrchestrator:
    def __init__(
        self,
        *,
        stores: Callable[[], AbstractContextManager[ChatStore]],
        ai_client: AIClient,
        rate_limiter: FixedWindowRateLimiter | None = None,
        locks: Callable[[str, str], asyncio.Lock] | None = None,
        pacing: PacingPolicy | None = None,
        pacer: Pacer | None = None,
        history_limit: int = 20,
    ) -> None:
        self.stores = stores
        self.ai_client = ai_client
        self.rate_limiter = rate_limiter
        self.pacing = pacing or PacingPolicy()
        self.pacer = pacer or Pacer()
        self.history_limit = max(0, int(history_limit))
        self._locks = locks
        self._own_locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, chat_id: str, agent_id: str) -> asyncio.Lock:
        if self._locks is not None:
            return self._locks(chat_id, agent_id)
        return self._own_locks.setdefault((chat_id, agent_id), asyncio.Lock())

    async def _store(self, op: Callable[[ChatStore], T]) -> T:
        def _run() -> T:
            with self.stores() as store:
                return op(store)

        return await run_in_threadpool(_run)

    def start(self, request: SendRequest) -> DeliveryRun:
        return DeliveryRun(request=request)

    async def validate(self, run: DeliveryRun) -> Chat:
        """Preconditions for a send; failures leave the run REJECTED and re-raise."""

        req = run.request
        try:
            if self.rate_limiter is not None and not self.rate_limiter.check(
                req.user_id, "message"
            ):
                raise RateLimitError(
                    "Rate limit exceeded",
                    retry_after=self.rate_limiter.retry_after(req.user_id, "message"),
                )
            if not (req.chat_id and (req.content or "").strip() and (req.agent_id or "").strip()):
                raise ValidationFailedError("Invalid message format")
            run.persona = resolve_persona(req.agent_id)
            chat = await self._store(lambda s: s.find_chat(req.chat_id, req.user_id))
            if chat is None:
                raise AuthorizationError("Access denied to chat", details={"chatId": req.chat_id})
        except NiyaException as exc:
            logger.info("Send rejected for chat %s: %s", req.chat_id, exc.message)
            run.fail(exc, DeliveryState.REJECTED)
            raise
        run.validated = True
        return chat

    async def deliver(
        self, run: DeliveryRun, sink: EventSink, *, pacer: Pacer | None = None
    ) -> DeliveryRun:
        """Run the full send; the confirmed echo always precedes any assistant reply."""

        if not run.validated:
            await self.validate(run)
        req = run.request
        # Echoed before the pair lock; queued sends still see their message at once.
        await sink.optimistic(run, self.optimistic_record(run))

        async with self._lock_for(req.chat_id, req.agent_id):
            try:
                await self._set_typing(run, sink, True)

                run.advance(DeliveryState.PERSISTING_USER)
                run.user_message = await self._persist_user(run)
                await sink.confirmed(run, run.user_message)

                run.advance(DeliveryState.AWAITING_UPSTREAM)
                run.reply = await self._request_reply(run)

                run.advance(DeliveryState.PERSISTING_REPLY)
                run.assistant_messages.append(await self._persist_segment(run, 1))
                await self._set_typing(run, sink, False)

                await run_pipeline(self.reply_steps(run, sink), pacer or self.pacer)
                run.advance(DeliveryState.DONE)
            except Exception as exc:
                if run.typing:
                    await self._set_typing(run, sink, False)
                run.fail(exc)
                logger.warning(
                    "Delivery %s failed in chat %s: %s", run.run_id, req.chat_id, exc
                )
                raise
        logger.info(
            "Delivered %d assistant message(s) in chat %s",
            len(run.assistant_messages),
            req.chat_id,
        )
        return run

    def reply_steps(self, run: DeliveryRun, sink: EventSink) -> list[Step]:
        pacing = self.pacing
        steps: list[Step] = [
            DelayStep(pacing.initial_delay),
            EmitStep("primary", partial(self._emit_primary, run, sink)),
        ]
        for index in range(2, run.total_segments + 1):
            steps.extend(
                [
                    DelayStep(pacing.segment_delay_min, pacing.segment_delay_max),
                    EmitStep(f"typing-on:{index}", partial(self._set_typing, run, sink, True)),
                    DelayStep(pacing.typing_pause),
                    EmitStep(f"typing-off:{index}", partial(self._set_typing, run, sink, False)),
                    EmitStep(f"segment:{index}", partial(self._emit_additional, run, sink, index)),
                ]
            )
        return steps

    def optimistic_record(self, run: DeliveryRun) -> dict[str, Any]:
        req = run.request
        return {
            "id": run.temp_id,
            "chatId": req.chat_id,
            "userId": req.user_id,
            "agentId": req.agent_id,
            "content": req.content,
            "role": "user",
            "timestamp": utcnow().isoformat(),
            "metadata": {"confirmed": False},
        }

    async def _set_typing(self, run: DeliveryRun, sink: EventSink, is_typing: bool) -> None:
        run.typing = is_typing
        await sink.typing(run, is_typing)

    async def _emit_primary(self, run: DeliveryRun, sink: EventSink) -> None:
        run.advance(DeliveryState.EMITTING_PRIMARY)
        await sink.assistant_message(
            run, run.assistant_messages[0], segment_index=1, total=run.total_segments
        )

    async def _emit_additional(self, run: DeliveryRun, sink: EventSink, index: int) -> None:
        run.advance(DeliveryState.EMITTING_ADDITIONAL)
        message = await self._persist_segment(run, index)
        run.assistant_messages.append(message)
        await sink.assistant_message(run, message, segment_index=index, total=run.total_segments)

    async def _persist_user(self, run: DeliveryRun) -> Message:
        req = run.request

        def op(store: ChatStore) -> Message:
            index = store.count_messages(req.chat_id)
            message = store.create_message(
                chat_id=req.chat_id,
                user_id=req.user_id,
                agent_id=req.agent_id,
                role="user",
                content=req.content,
                meta={"read": False, "messageIndex": index},
            )
            store.record_chat_activity(req.chat_id, req.content)
            return message

        return await self._store(op)

    async def _request_reply(self, run: DeliveryRun) -> AIReply:
        req = run.request
        persona = run.persona or resolve_persona(req.agent_id)
        exclude_id = run.user_message.id if run.user_message is not None else None
        recent = await self._store(
            lambda s: s.recent_messages(req.chat_id, self.history_limit + 1)
        )
        history = [
            {"role": m.role, "content": m.content}
            for m in recent
            if m.id != exclude_id and (m.content or "").strip()
        ]
        history = history[-self.history_limit :] if self.history_limit else []
        return await self.ai_client.complete(
            system_prompt_for(persona),
            history,
            req.content,
            persona=persona.value,
            conversation_id=req.chat_id,
        )

    async def _persist_segment(self, run: DeliveryRun, index: int) -> Message:
        req = run.request
        assert run.reply is not None
        total = run.total_segments
        text = run.reply.segments[index - 1]
        meta: dict[str, Any] = {
            "read": False,
            "isMultiMessage": total > 1,
            "segmentIndex": index,
            "totalSegments": total,
            "totalMessages": total,
        }
        if index == 1:
            meta["confidence"] = ASSISTANT_CONFIDENCE
        else:
            meta["isAdditional"] = True
            if run.primary is not None:
                meta["primaryMessageId"] = run.primary.id

        def op(store: ChatStore) -> Message:
            meta["messageIndex"] = store.count_messages(req.chat_id)
            message = store.create_message(
                chat_id=req.chat_id,
                user_id=req.user_id,
                agent_id=req.agent_id,
                role="assistant",
                content=text,
                meta=meta,
            )
            store.record_chat_activity(req.chat_id, text)
            return message

        return await self._store(op)


def message_payload(message: Message, **flags: Any) -> dict[str, Any]:
    """Wire form of a stored message, with optional delivery flags merged in."""

    data = MessageRecord.from_model(message).wire()
    data.update(flags)
    return data


def assistant_flags(run: DeliveryRun, segment_index: int, total: int) -> dict[str, Any]:
    if segment_index == 1:
        return {"isMultiMessage": total > 1, "isFirst": True, "totalMessages": total}
    return {
        "isMultiMessage": True,
        "isAdditional": True,
        "messageIndex": segment_index,
        "totalMessages": total,
    }


__all__ = [
    "DelayStep",
    "DeliveryRun",
    "DeliveryState",
    "EmitStep",
    "EventSink",
    "MessageDeliveryOrchestrator",
    "NullSink",
    "Pacer",
    "PacingPolicy",
    "SendRequest",
    "assistant_flags",
    "message_payload",
    "run_pipeline",
]
