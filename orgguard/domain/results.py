from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar


T = TypeVar("T")


class ErrorCode(str, Enum):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    UNAVAILABLE = "UNAVAILABLE"


@dataclass(frozen=True)
class ServiceError:
    # Stable code plus a human-readable message for API and script callers.
    code: ErrorCode
    message: str
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    # Domain operations return either data or an error, never both.
    data: T | None = None
    error: ServiceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def success(data: T | None = None) -> OperationResult[T]:
    return OperationResult(data=data, error=None)


def failure(code: ErrorCode, message: str, details: dict[str, Any] | None = None) -> OperationResult[Any]:
    return OperationResult(data=None, error=ServiceError(code=code, message=message, details=details))


def permission_denied(permission: str) -> OperationResult[Any]:
    return failure(
        ErrorCode.PERMISSION_DENIED,
        f"Missing super admin permission: {permission}",
        {"permission": permission},
    )


def not_found(resource: str, resource_id: str) -> OperationResult[Any]:
    return failure(
        ErrorCode.NOT_FOUND,
        f"{resource} not found",
        {"resource": resource, "id": resource_id},
    )


def invalid_argument(message: str, **details: Any) -> OperationResult[Any]:
    return failure(ErrorCode.INVALID_ARGUMENT, message, details or None)


def unavailable(message: str = "Storage is temporarily unavailable") -> OperationResult[Any]:
    return failure(ErrorCode.UNAVAILABLE, message)
