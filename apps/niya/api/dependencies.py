"""Shared API dependencies."""

from collections.abc import Generator
from typing import Optional

from fastapi import Depends, Header
from sqlmodel import Session

from niya.core.database import get_session
from niya.core.dependencies import get_authenticator
from niya.models.user import User
from niya.services.auth import SessionAuthenticator, bearer_token
from niya.services.chat_store import ChatStore


def get_db_session() -> Generator[Session, None, None]:
    """Provide a database session for request handlers."""
    yield from get_session()


def get_chat_store(session: Session = Depends(get_db_session)) -> ChatStore:
    return ChatStore(session)


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    store: ChatStore = Depends(get_chat_store),
    authenticator: SessionAuthenticator = Depends(get_authenticator),
) -> User:
    """Resolve the bearer token on every REST request; any failure is a 401."""

    return authenticator.authenticate(bearer_token(authorization), store, missing_user_status=401)


__all__ = ["get_chat_store", "get_current_user", "get_db_session"]
