from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY, HTTP_500_INTERNAL_SERVER_ERROR

logger = logging.getLogger(__name__)


def _error_payload(
    *,
    error: str,
    type_: str,
    code: str | None = None,
    details: Any | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": error, "code": code, "type": type_}
    if details is not None:
        payload["details"] = details
    return payload


class NiyaException(Exception):
    """Base exception for the chat gateway.

    Raised from request handlers, socket event handlers, or the services they
    call. HTTP routes translate them via the registered exception handlers; the
    realtime gateway converts them into a single `error` envelope using
    `status_code` as the socket error code.
    """

    status_code: int = 400
    default_code: str | None = None

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: Any | None = None,
    ) -> None:
        self.message = message
        self.code = code if code is not None else self.default_code
        self.status_code = status_code if status_code is not None else self.status_code
        self.details = details
        super().__init__(message)


class ConfigurationError(NiyaException):
    """Raised when configuration is invalid (server-side)."""

    status_code = 500
    default_code = "configuration_error"


class AuthenticationError(NiyaException):
    """Missing, malformed, or unresolvable credential."""

    status_code = 401
    default_code = "authentication_failed"


class AuthorizationError(NiyaException):
    """Valid identity acting on a conversation it does not own."""

    status_code = 403
    default_code = "authorization_denied"


class ValidationFailedError(NiyaException):
    """Malformed event or request payload."""

    status_code = 400
    default_code = "validation_failed"


class NotFoundError(NiyaException):
    status_code = 404
    default_code = "not_found"


class RateLimitError(NiyaException):
    """Raised when a rate limit is exceeded."""

    status_code = 429
    default_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs: Any) -> None:
        self.retry_after = retry_after
        details = kwargs.pop("details", None)
        if details is None and retry_after is not None:
            details = {"retryAfter": round(retry_after, 3)}
        super().__init__(message, details=details, **kwargs)


class PersistenceError(NiyaException):
    """The store failed; fatal to the current send flow and never retried."""

    status_code = 500
    default_code = "persistence_failure"


class UpstreamError(NiyaException):
    """Base class for failures of the external AI service."""

    status_code = 502
    default_code = "upstream_error"


class UpstreamUnavailableError(UpstreamError):
    """Network error or timeout talking to the AI service."""

    status_code = 503
    default_code = "upstream_unavailable"


class UpstreamProtocolError(UpstreamError):
    """The AI service answered, but without the expected success/content fields."""

    status_code = 502
    default_code = "upstream_protocol_error"


def register_exception_handlers(app: FastAPI) -> None:
    """Register the gateway's exception handlers on a FastAPI app."""

    @app.exception_handler(NiyaException)
    async def _niya_exception_handler(_request: Request, exc: NiyaException) -> JSONResponse:
        headers = None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            headers = {"Retry-After": str(max(1, int(round(exc.retry_after))))}
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(
                error=exc.message,
                code=exc.code,
                type_=exc.__class__.__name__,
                details=exc.details,
            ),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_payload(
                error="Validation error",
                code="validation_error",
                type_=exc.__class__.__name__,
                details=jsonable_encoder(exc.errors()),
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(
        _request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        detail = getattr(exc, "detail", None)
        if isinstance(detail, str):
            error = detail
            details = None
        else:
            error = "Request failed"
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(
                error=error,
                code="http_exception",
                type_=exc.__class__.__name__,
                details=details,
            ),
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_payload(
                error="Internal server error",
                code="internal_error",
                type_="InternalServerError",
            ),
        )
