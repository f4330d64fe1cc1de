from __future__ import annotations

from typing import Any

from orgguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Invalid argument",
        _error_example(code="INVALID_ARGUMENT", message="Block reason is required"),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-Principal-Id header is required"),
    ),
    403: _response(
        "Permission denied",
        _error_example(
            code="PERMISSION_DENIED",
            message="Missing super admin permission: edit_all_organisations",
            details={"permission": "edit_all_organisations"},
        ),
    ),
    404: _response(
        "Not found",
        _error_example(
            code="NOT_FOUND",
            message="Organisation not found",
            details={"resource": "Organisation", "id": "org_example"},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    503: _response(
        "Storage or payment processor unavailable",
        _error_example(code="UNAVAILABLE", message="Storage is temporarily unavailable"),
    ),
}
