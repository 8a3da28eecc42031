"""Error envelope and exception handlers of the operational API."""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from enum import Enum
import logging
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from encore.errors import ValidationError
from encore.logging import get_logger
from encore.workers.registry import UnknownQueueError

_logger = get_logger(__name__)


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(Exception):
    """Base exception for errors rendered into the ``{"ok": false}`` envelope."""

    __slots__ = ("message", "code", "http_status", "meta")

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.meta = meta

    def as_response(self, *, request_path: str, method: str) -> JSONResponse:
        return to_response(
            message=self.message,
            code=self.code,
            status_code=self.http_status,
            request_path=request_path,
            method=method,
            meta=self.meta,
        )


class ValidationAppError(AppError):
    """Error raised when a client submitted invalid input."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            http_status=status_code,
            meta=meta,
        )


class NotFoundError(AppError):
    """Error raised when a resource could not be located."""

    def __init__(self, message: str = "Resource not found.") -> None:
        super().__init__(
            message=message,
            code=ErrorCode.NOT_FOUND,
            http_status=status.HTTP_404_NOT_FOUND,
        )


class InternalServerError(AppError):
    """Error raised when the application encountered an unexpected failure."""

    def __init__(self, message: str = "An unexpected error occurred.") -> None:
        super().__init__(
            message=message,
            code=ErrorCode.INTERNAL_ERROR,
            http_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


def _log_level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    return logging.INFO


def to_response(
    *,
    message: str,
    code: ErrorCode,
    status_code: int,
    request_path: str,
    method: str,
    meta: Mapping[str, Any] | None = None,
) -> JSONResponse:
    """Create an error response with the standard envelope."""

    debug_id = uuid4().hex
    payload: MutableMapping[str, Any] = {
        "ok": False,
        "error": {"code": code.value, "message": message},
    }
    if meta:
        payload["error"]["meta"] = dict(meta)
    response = JSONResponse(status_code=status_code, content=payload)
    response.headers["X-Debug-Id"] = debug_id
    _logger.log(
        _log_level_for_status(status_code),
        "API request failed",
        extra={
            "event": "api.error",
            "code": code.value,
            "status": status_code,
            "path": request_path,
            "method": method,
            "debug_id": debug_id,
        },
    )
    return response


def _detail_message(detail: Any, default: str) -> str:
    if isinstance(detail, str) and detail.strip():
        return detail
    return default


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    status_code = exc.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR
    if status_code == status.HTTP_404_NOT_FOUND:
        code, default = ErrorCode.NOT_FOUND, "Resource not found."
    elif status_code < 500:
        code, default = ErrorCode.VALIDATION_ERROR, "Request could not be completed."
    else:
        code, default = ErrorCode.INTERNAL_ERROR, "An unexpected error occurred."
    return to_response(
        message=_detail_message(exc.detail, default),
        code=code,
        status_code=status_code,
        request_path=request.url.path,
        method=request.method,
    )


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields: list[dict[str, str]] = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ())]
        if location and location[0] in {"body", "query", "path", "header", "cookie"}:
            location = location[1:]
        fields.append({"name": ".".join(location) or "?", "message": error.get("msg", "Invalid input.")})
    return to_response(
        message="Request validation failed.",
        code=ErrorCode.VALIDATION_ERROR,
        status_code=422,
        request_path=request.url.path,
        method=request.method,
        meta={"fields": fields} if fields else None,
    )


async def _handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    return exc.as_response(request_path=request.url.path, method=request.method)


async def _handle_pipeline_validation(request: Request, exc: ValidationError) -> JSONResponse:
    return ValidationAppError(str(exc)).as_response(
        request_path=request.url.path, method=request.method
    )


async def _handle_unknown_queue(request: Request, exc: UnknownQueueError) -> JSONResponse:
    return NotFoundError(str(exc)).as_response(
        request_path=request.url.path, method=request.method
    )


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    _logger.exception("Unhandled application error", exc_info=exc)
    return InternalServerError().as_response(
        request_path=request.url.path, method=request.method
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the canonical exception handlers for the API."""

    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(HTTPException, _handle_http_exception)
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(ValidationError, _handle_pipeline_validation)
    app.add_exception_handler(UnknownQueueError, _handle_unknown_queue)
    app.add_exception_handler(Exception, _handle_unexpected_error)


__all__ = [
    "AppError",
    "ErrorCode",
    "InternalServerError",
    "NotFoundError",
    "ValidationAppError",
    "setup_exception_handlers",
    "to_response",
]
