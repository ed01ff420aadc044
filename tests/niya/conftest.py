from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

from niya.api import register_routes
from niya.api.dependencies import get_db_session
from niya.core.database import init_db
from niya.core.dependencies import (
    get_authenticator,
    get_gateway,
    get_orchestrator,
    get_realtime_state,
)
from niya.core.exceptions import register_exception_handlers
from niya.models.user import User
from niya.services.ai_client import AIReply, SegmentedReply, SingleReply
from niya.services.auth import SessionAuthenticator
from niya.services.chat_store import ChatStore, ChatStoreFactory
from niya.services.delivery import MessageDeliveryOrchestrator, Pacer, PacingPolicy
from niya.services.realtime.gateway import RealtimeGateway
from niya.services.realtime.state import RealtimeState

JWT_SECRET = "test-secret"


class FakeAIClient:
    """Replays queued replies (or raises queued exceptions) and records each request."""

    def __init__(self, *outcomes: AIReply | Exception) -> None:
        self.outcomes: list[AIReply | Exception] = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    def queue(self, *outcomes: AIReply | Exception) -> None:
        self.outcomes.extend(outcomes)

    async def complete(
        self,
        system_prompt: str,
        history: Any,
        latest_user_text: str,
        *,
        persona: str | None = None,
        conversation_id: str | None = None,
    ) -> AIReply:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "history": list(history),
                "text": latest_user_text,
                "persona": persona,
                "conversation_id": conversation_id,
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else SingleReply("ok")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeTransport:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.open = True
        self.closed_with: int | None = None
        self.fail_sends = False

    @property
    def is_open(self) -> bool:
        return self.open

    async def send(self, envelope: dict[str, Any]) -> None:
        if self.fail_sends:
            raise RuntimeError("socket gone")
        self.sent.append(envelope)

    async def close(self, code: int = 1008, reason: str | None = None) -> None:
        self.open = False
        self.closed_with = code

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


class RecordingPacer(Pacer):
    """Never sleeps; remembers every wait it was asked for."""

    def __init__(self) -> None:
        self.waits: list[float] = []

        async def _sleep(seconds: float) -> None:
            self.waits.append(seconds)

        super().__init__(sleep=_sleep, uniform=lambda low, high: (low + high) / 2)


@pytest.fixture
def engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture
def session_factory(engine: Engine) -> Callable[[], Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, class_=Session)


@pytest.fixture
def stores(session_factory: Callable[[], Session]) -> ChatStoreFactory:
    return ChatStoreFactory(session_factory)


@pytest.fixture
def store(session_factory: Callable[[], Session]) -> ChatStore:
    session = session_factory()
    yield ChatStore(session)
    session.close()


@pytest.fixture
def make_user(stores: ChatStoreFactory) -> Callable[..., User]:
    counter = {"n": 0}

    def _make(email: str | None = None, name: str = "Test User") -> User:
        counter["n"] += 1
        with stores() as s:
            user = User(email=email or f"user{counter['n']}@example.com", name=name)
            s.session.add(user)
            s.session.commit()
            s.session.refresh(user)
            return user

    return _make


@pytest.fixture
def authenticator() -> SessionAuthenticator:
    return SessionAuthenticator(secret=JWT_SECRET)


@pytest.fixture
def fake_ai() -> FakeAIClient:
    return FakeAIClient()


@pytest.fixture
def make_transport() -> Callable[[], FakeTransport]:
    return FakeTransport


@pytest.fixture
def pacer() -> RecordingPacer:
    return RecordingPacer()


@pytest.fixture
def realtime_state() -> RealtimeState:
    return RealtimeState()


@pytest.fixture
def orchestrator(
    stores: ChatStoreFactory,
    fake_ai: FakeAIClient,
    realtime_state: RealtimeState,
    pacer: RecordingPacer,
) -> MessageDeliveryOrchestrator:
    return MessageDeliveryOrchestrator(
        stores=stores,
        ai_client=fake_ai,
        rate_limiter=realtime_state.rate_limiter,
        locks=realtime_state.lock_for,
        pacing=PacingPolicy(),
        pacer=pacer,
    )


@pytest.fixture
def gateway(
    realtime_state: RealtimeState,
    stores: ChatStoreFactory,
    authenticator: SessionAuthenticator,
    orchestrator: MessageDeliveryOrchestrator,
) -> RealtimeGateway:
    return RealtimeGateway(
        state=realtime_state,
        stores=stores,
        authenticator=authenticator,
        orchestrator=orchestrator,
        keepalive_seconds=0,
    )


@pytest.fixture
def app(
    session_factory: Callable[[], Session],
    authenticator: SessionAuthenticator,
    realtime_state: RealtimeState,
    orchestrator: MessageDeliveryOrchestrator,
    gateway: RealtimeGateway,
) -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)
    register_routes(app)

    def _session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = _session
    app.dependency_overrides[get_authenticator] = lambda: authenticator
    app.dependency_overrides[get_realtime_state] = lambda: realtime_state
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_gateway] = lambda: gateway
    return app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture
def auth_headers(authenticator: SessionAuthenticator) -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {authenticator.issue_token(user.id)}"}

    return _headers


__all__ = ["FakeAIClient", "FakeTransport", "RecordingPacer", "SegmentedReply", "SingleReply"]
