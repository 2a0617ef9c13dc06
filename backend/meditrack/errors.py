from enum import Enum
from typing import Any, Awaitable, Optional, TypeVar

T = TypeVar("T")


class StoreErrorKind(str, Enum):
    DUPLICATE_KEY = "duplicate_key"
    UNAVAILABLE = "unavailable"


class StoreError(Exception):
    """Raised by a document store adapter, tagged with what went wrong."""

    def __init__(self, kind: StoreErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INFRASTRUCTURE = "infrastructure"


class ServiceError(Exception):
    kind: ErrorKind = ErrorKind.INFRASTRUCTURE

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(ServiceError):
    kind = ErrorKind.VALIDATION


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    kind = ErrorKind.CONFLICT


class InfrastructureError(ServiceError):
    kind = ErrorKind.INFRASTRUCTURE


def from_store_error(exc: StoreError, conflict_message: str = "Record already exists") -> ServiceError:
    if exc.kind is StoreErrorKind.DUPLICATE_KEY:
        return ConflictError(conflict_message)
    return InfrastructureError(exc.message)


async def guarded(operation: Awaitable[T], conflict_message: str = "Record already exists") -> T:
    """Await a store call, re-raising store failures as service errors."""
    try:
        return await operation
    except StoreError as exc:
        raise from_store_error(exc, conflict_message) from exc
