"""Client for the external AI completion service.

The service is a plain request/response dependency:

    POST <base_url>/message
    {"message": ..., "conversation_history": [...], "system_prompt": ...}

and answers either `{success, response}` or `{success, messages[], is_multi_message}`.
Replies are decoded into a small tagged union so callers never have to sniff
payload shapes themselves.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol, Sequence, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from niya.core.exceptions import UpstreamError, UpstreamProtocolError, UpstreamUnavailableError
from niya.core.settings import AIFailureMode, Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SingleReply:
    text: str

    @property
    def segments(self) -> tuple[str, ...]:
        return (self.text,)


@dataclass(frozen=True)
class SegmentedReply:
    segments: tuple[str, ...]

    def __post_init__(self) -> None:
        if len(self.segments) < 2:
            raise ValueError("SegmentedReply needs at least two segments")


AIReply = Union[SingleReply, SegmentedReply]


def decode_reply(payload: Any) -> AIReply:
    """Turn a decoded JSON body into an `AIReply`.

    `messages` wins over `response` when both are present. Anything without
    usable text is a protocol error.
    """

    if not isinstance(payload, dict):
        raise UpstreamProtocolError("AI service returned a non-object body")
    if payload.get("success") is False:
        raise UpstreamProtocolError(
            "AI service reported failure",
            details={"error": payload.get("error")},
        )

    messages = payload.get("messages")
    if isinstance(messages, list) and messages:
        segments = tuple(m for m in messages if isinstance(m, str) and m.strip())
        if len(segments) > 1:
            return SegmentedReply(segments)
        if len(segments) == 1:
            return SingleReply(segments[0])

    response = payload.get("response")
    if isinstance(response, str) and response.strip():
        return SingleReply(response)

    raise UpstreamProtocolError("AI service response had no content")


class AIClient(Protocol):
    async def complete(
        self,
        system_prompt: str,
        history: Sequence[dict[str, str]],
        latest_user_text: str,
        *,
        persona: str | None = None,
        conversation_id: str | None = None,
    ) -> AIReply: ...


class UpstreamAIClient:
    """httpx-based client with a fixed-wait retry on network errors and timeouts."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 25.0,
        max_attempts: int = 2,
        retry_delay: float = 2.0,
        context_limit: int = 6,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay = max(0.0, float(retry_delay))
        self.context_limit = max(1, int(context_limit))
        self._transport = transport

    def build_payload(
        self, system_prompt: str, history: Sequence[dict[str, str]], latest_user_text: str
    ) -> dict[str, Any]:
        conversation = [dict(h) for h in history if (h.get("content") or "").strip()]
        conversation.append({"role": "user", "content": latest_user_text})
        return {
            "message": latest_user_text,
            "conversation_history": conversation[-self.context_limit :],
            "system_prompt": system_prompt,
        }

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            return await client.post(f"{self.base_url}/message", json=payload)

    async def complete(
        self,
        system_prompt: str,
        history: Sequence[dict[str, str]],
        latest_user_text: str,
        *,
        persona: str | None = None,
        conversation_id: str | None = None,
    ) -> AIReply:
        payload = self.build_payload(system_prompt, history, latest_user_text)
        started = time.monotonic()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_fixed(self.retry_delay),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    n = attempt.retry_state.attempt_number
                    logger.debug("AI request attempt %d/%d", n, self.max_attempts)
                    resp = await self._post(payload)
        except httpx.TransportError as exc:
            logger.warning(
                "AI service unreachable after %d attempts: %s", self.max_attempts, exc
            )
            raise UpstreamUnavailableError("AI service unavailable") from exc

        if resp.status_code < 200 or resp.status_code >= 300:
            logger.warning("AI service returned HTTP %s", resp.status_code)
            raise UpstreamUnavailableError(
                f"AI service error {resp.status_code}",
                details={"status": resp.status_code},
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamProtocolError("AI service returned invalid JSON") from exc

        reply = decode_reply(body)
        logger.info(
            "AI service replied in %.0fms with %d segment(s)",
            (time.monotonic() - started) * 1000,
            len(reply.segments),
        )
        return reply


class FallbackAIClient:
    """Wraps a primary client and answers from the rule-based responder on upstream failure."""

    def __init__(self, primary: AIClient, responder: Any) -> None:
        self.primary = primary
        self.responder = responder

    async def complete(
        self,
        system_prompt: str,
        history: Sequence[dict[str, str]],
        latest_user_text: str,
        *,
        persona: str | None = None,
        conversation_id: str | None = None,
    ) -> AIReply:
        try:
            return await self.primary.complete(
                system_prompt,
                history,
                latest_user_text,
                persona=persona,
                conversation_id=conversation_id,
            )
        except UpstreamError as exc:
            logger.warning("AI service failed (%s); using fallback responder", exc.code)
            text = self.responder.reply(
                latest_user_text, persona=persona, conversation_id=conversation_id
            )
            return SingleReply(text)


def build_ai_client(
    settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None
) -> AIClient:
    client = UpstreamAIClient(
        base_url=settings.ai_service_url,
        timeout=settings.ai_timeout_seconds,
        max_attempts=settings.ai_max_attempts,
        retry_delay=settings.ai_retry_delay_seconds,
        context_limit=settings.upstream_context_limit,
        transport=transport,
    )
    if settings.ai_failure_mode == AIFailureMode.fallback:
        from niya.services.fallback_responder import RuleBasedResponder

        return FallbackAIClient(client, RuleBasedResponder())
    return client


__all__ = [
    "AIClient",
    "AIReply",
    "FallbackAIClient",
    "SegmentedReply",
    "SingleReply",
    "UpstreamAIClient",
    "build_ai_client",
    "decode_reply",
]
