"""
Error taxonomy for grid dispatch.

Components report failures as values (``Result``) carrying an ``ErrorKind``
and a caller-safe message. The HTTP layer turns a failure into the
``{success: false, message, errorCode}`` body and a status code.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_FORMAT = "INVALID_FORMAT"
    INVALID_TYPE = "INVALID_TYPE"
    BAD_FILTER = "BAD_FILTER"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"
    TIMED_OUT = "TIMED_OUT"
    UNSUPPORTED = "UNSUPPORTED"
    INTERNAL = "INTERNAL"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_FORMAT: 400,
    ErrorKind.INVALID_TYPE: 400,
    ErrorKind.BAD_FILTER: 400,
    ErrorKind.VALIDATION_FAILED: 400,
    ErrorKind.CONSTRAINT_VIOLATION: 409,
    ErrorKind.TIMED_OUT: 504,
    ErrorKind.UNSUPPORTED: 400,
    ErrorKind.INTERNAL: 500,
}


@dataclass(frozen=True)
class GridFailure:
    """A domain-predictable failure. ``code`` overrides the kind's default errorCode."""

    kind: ErrorKind
    message: str
    code: Optional[str] = None

    @property
    def error_code(self) -> str:
        return self.code or self.kind.value

    def to_body(self) -> dict:
        return {"success": False, "message": self.message, "errorCode": self.error_code}


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a ``GridFailure``."""

    value: Optional[T] = None
    failure: Optional[GridFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, code: Optional[str] = None) -> "Result":
        return cls(failure=GridFailure(kind, message, code))
