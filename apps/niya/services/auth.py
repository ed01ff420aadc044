"""Bearer-token authentication for sockets and REST requests.

Tokens are HS256 JWTs issued elsewhere; the gateway only verifies them and
maps the `sub` claim (an integer user id, carried as a string) to a user row.
"""

from __future__ import annotations

import logging
from datetime import timedelta

import jwt

from niya.core.exceptions import AuthenticationError
from niya.core.settings import Settings
from niya.core.utils import utcnow
from niya.models.user import User
from niya.services.chat_store import ChatStore

logger = logging.getLogger(__name__)


def _parse_user_id(sub: object) -> int:
    if isinstance(sub, bool):
        raise ValueError("sub must be an integer id")
    if isinstance(sub, int):
        return sub
    if isinstance(sub, str) and sub.strip().isdigit():
        return int(sub.strip())
    raise ValueError("sub must be an integer id")


class SessionAuthenticator:
    def __init__(self, *, secret: str, algorithm: str = "HS256") -> None:
        self.secret = secret
        self.algorithm = algorithm

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionAuthenticator:
        return cls(
            secret=settings.jwt_secret.get_secret_value(),
            algorithm=settings.jwt_algorithm,
        )

    def issue_token(self, user_id: int, *, expires_in: timedelta | None = None, **claims) -> str:
        """Mint a token for `user_id` (used by local tooling and tests)."""

        payload = {"sub": str(user_id), "iat": utcnow(), **claims}
        if expires_in is not None:
            payload["exp"] = utcnow() + expires_in
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def user_id_from_token(self, token: str | None) -> int:
        if not token or not token.strip():
            raise AuthenticationError("Authentication token required")
        try:
            payload = jwt.decode(
                token.strip(),
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["sub"]},
            )
            return _parse_user_id(payload.get("sub"))
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationError("Authentication token expired", code="token_expired") from exc
        except (jwt.InvalidTokenError, ValueError) as exc:
            logger.info("Rejected token: %s", exc)
            raise AuthenticationError("Invalid authentication token") from exc

    def authenticate(
        self, token: str | None, store: ChatStore, *, missing_user_status: int = 404
    ) -> User:
        """Resolve a bearer token to an existing user or raise `AuthenticationError`."""

        user_id = self.user_id_from_token(token)
        user = store.get_user(user_id)
        if user is None or not user.is_active:
            logger.warning("User %s not found", user_id)
            raise AuthenticationError(
                "User not found",
                code="user_not_found",
                status_code=missing_user_status,
            )
        return user


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an `Authorization: Bearer <token>` header value."""

    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


__all__ = ["SessionAuthenticator", "bearer_token"]
