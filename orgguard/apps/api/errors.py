from __future__ import annotations

import logging
from typing import Any, NoReturn, TypeVar

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from orgguard.apps.api.response import error_response
from orgguard.domain.results import ErrorCode, OperationResult, ServiceError


logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "INVALID_ARGUMENT",
    401: "AUTH_UNAUTHORIZED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "UNAVAILABLE",
}

_STATUS_BY_ERROR_CODE: dict[ErrorCode, int] = {
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_ARGUMENT: 400,
    ErrorCode.UNAVAILABLE: 503,
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def service_error_to_http(error: ServiceError) -> HTTPException:
    detail: dict[str, Any] = {"code": error.code.value, "message": error.message}
    if error.details:
        detail.update(error.details)
    return HTTPException(status_code=_STATUS_BY_ERROR_CODE[error.code], detail=detail)


def raise_for_error(error: ServiceError) -> NoReturn:
    raise service_error_to_http(error)


def unwrap(result: OperationResult[T]) -> T:
    # Return the data of a successful result or raise the matching HTTP error.
    if result.error is not None:
        raise_for_error(result.error)
    return result.data  # type: ignore[return-value]


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, jsonable_encoder(details) or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers both FastAPI and Starlette HTTP exceptions.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def storage_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("storage_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="UNAVAILABLE",
        message="Storage is temporarily unavailable",
    )
    return JSONResponse(content=payload, status_code=503)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


__all__ = [
    "HTTPException",
    "http_exception_handler",
    "raise_for_error",
    "service_error_to_http",
    "storage_exception_handler",
    "unhandled_exception_handler",
    "unwrap",
    "validation_exception_handler",
]
