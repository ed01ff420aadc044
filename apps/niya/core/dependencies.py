"""Central dependency providers.

Process-scoped collaborators (realtime state, AI client, orchestrator, socket
gateway) are built once and cached, so tests can clear the caches or override
the providers through `app.dependency_overrides`.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from niya.core.settings import get_settings

if TYPE_CHECKING:
    from niya.services.ai_client import AIClient
    from niya.services.auth import SessionAuthenticator
    from niya.services.chat_store import ChatStoreFactory
    from niya.services.delivery import MessageDeliveryOrchestrator
    from niya.services.realtime.gateway import RealtimeGateway
    from niya.services.realtime.state import RealtimeState


@lru_cache(maxsize=1)
def get_store_factory() -> ChatStoreFactory:
    from niya.core.database import SessionLocal
    from niya.services.chat_store import ChatStoreFactory

    return ChatStoreFactory(SessionLocal)


@lru_cache(maxsize=1)
def get_realtime_state() -> RealtimeState:
    from niya.services.realtime.state import RealtimeState

    return RealtimeState.from_settings(get_settings())


@lru_cache(maxsize=1)
def get_authenticator() -> SessionAuthenticator:
    from niya.services.auth import SessionAuthenticator

    return SessionAuthenticator.from_settings(get_settings())


@lru_cache(maxsize=1)
def get_ai_client() -> AIClient:
    from niya.services.ai_client import build_ai_client

    return build_ai_client(get_settings())


@lru_cache(maxsize=1)
def get_orchestrator() -> MessageDeliveryOrchestrator:
    from niya.services.delivery import MessageDeliveryOrchestrator, PacingPolicy

    settings = get_settings()
    state = get_realtime_state()
    return MessageDeliveryOrchestrator(
        stores=get_store_factory(),
        ai_client=get_ai_client(),
        rate_limiter=state.rate_limiter,
        locks=state.lock_for,
        pacing=PacingPolicy.from_settings(settings),
        history_limit=settings.history_context_limit,
    )


@lru_cache(maxsize=1)
def get_gateway() -> RealtimeGateway:
    from niya.services.realtime.gateway import RealtimeGateway

    return RealtimeGateway(
        state=get_realtime_state(),
        stores=get_store_factory(),
        authenticator=get_authenticator(),
        orchestrator=get_orchestrator(),
        keepalive_seconds=get_settings().keepalive_seconds,
    )


def clear_caches() -> None:
    for provider in (
        get_gateway,
        get_orchestrator,
        get_ai_client,
        get_authenticator,
        get_realtime_state,
        get_store_factory,
    ):
        provider.cache_clear()


__all__ = [
    "clear_caches",
    "get_ai_client",
    "get_authenticator",
    "get_gateway",
    "get_orchestrator",
    "get_realtime_state",
    "get_store_factory",
]
