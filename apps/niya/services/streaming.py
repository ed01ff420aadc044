"""Server-Sent Events rendition of a delivery run."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from niya.core.exceptions import NiyaException
from niya.models.chat import Message
from niya.services.delivery import (
    DeliveryRun,
    MessageDeliveryOrchestrator,
    NullSink,
    message_payload,
)

logger = logging.getLogger(__name__)

_inflight: set[asyncio.Task] = set()


def sse_encode(*, data: str, event: str = "message") -> str:
    # SSE frames require each line of `data` to be prefixed with "data:".
    lines = data.splitlines() or [""]
    return "".join([f"event: {event}\n"] + [f"data: {line}\n" for line in lines] + ["\n"])


def sse_frame(frame_type: str, body: dict[str, Any]) -> str:
    return sse_encode(
        event=frame_type,
        data=json.dumps({"type": frame_type, **body}, ensure_ascii=False),
    )


class StreamSink(NullSink):
    """Queues one `message` frame per assistant segment; other events are not streamed."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[str | None] = asyncio.Queue()

    async def assistant_message(
        self, run: DeliveryRun, message: Message, *, segment_index: int, total: int
    ) -> None:
        if total == 1:
            flags: dict[str, Any] = {"isSingle": True}
        elif segment_index == 1:
            flags = {"isFirst": True, "totalMessages": total}
        else:
            flags = {"isAdditional": True, "messageIndex": segment_index, "totalMessages": total}
        await self.queue.put(sse_frame("message", {"data": message_payload(message, **flags)}))


async def stream_delivery(
    orchestrator: MessageDeliveryOrchestrator, run: DeliveryRun
) -> AsyncIterator[str]:
    """Yield `connected`, one `message` per segment, then `complete` (or one `error`).

    The run keeps going if the client goes away mid-stream; only emission stops.
    """

    sink = StreamSink()

    async def _run() -> None:
        try:
            await orchestrator.deliver(run, sink)
        except NiyaException as exc:
            await sink.queue.put(sse_frame("error", {"error": exc.message, "code": exc.code}))
        except Exception:
            logger.exception("Streaming delivery failed in chat %s", run.request.chat_id)
            await sink.queue.put(
                sse_frame("error", {"error": "Failed to process message", "code": "internal_error"})
            )
        else:
            await sink.queue.put(sse_frame("complete", {"message": "Stream complete"}))
        finally:
            await sink.queue.put(None)

    yield sse_frame("connected", {"message": "Stream connected"})
    runner = asyncio.create_task(_run())
    _inflight.add(runner)
    runner.add_done_callback(_inflight.discard)
    while True:
        frame = await sink.queue.get()
        if frame is None:
            break
        yield frame


__all__ = ["StreamSink", "sse_encode", "sse_frame", "stream_delivery"]
