from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


def error_payload(
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


class ChatError(Exception):
    """Base exception for the chat backend.

    Raised from the store, the broadcast engine and the collaborators. REST
    handlers translate it through the registered exception handler; the
    real-time channel turns it into an ``error`` event for the sending session.
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

    def to_payload(self) -> dict[str, Any]:
        return error_payload(
            error=self.message,
            code=self.code,
            type_=self.__class__.__name__,
            details=self.details,
        )


class ValidationError(ChatError):
    """Empty text, a missing field or an otherwise unusable request."""

    status_code = 400
    default_code = "validation_error"


class AuthorizationError(ChatError):
    """The caller may not perform this operation (e.g. editing someone else's message)."""

    status_code = 403
    default_code = "forbidden"


class NotFoundError(ChatError):
    status_code = 404
    default_code = "not_found"


class StoreError(ChatError):
    """The persistence store failed; the triggering operation was not applied."""

    status_code = 503
    default_code = "store_unavailable"


def register_exception_handlers(app: FastAPI) -> None:
    """Register the chat exception handlers on a FastAPI app."""

    @app.exception_handler(ChatError)
    async def _chat_exception_handler(_request: Request, exc: ChatError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=error_payload(
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
            error, details = detail, None
        else:
            error, details = "Request failed", detail
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(
                error=error,
                code="http_exception",
                type_=exc.__class__.__name__,
                details=details,
            ),
        )
