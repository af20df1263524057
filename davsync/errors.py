"""
Error taxonomy for remote operations.
Transport calls return WebDavResult values instead of raising for expected outcomes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    SECURITY = "security"
    MALFORMED = "malformed"
    UNSUPPORTED = "unsupported"


# Error codes recorded on entities and job outputs
UNREACHABLE = "unreachable"
TIMEOUT = "timeout"
SSL_ERROR = "ssl"
AUTH_FAILED = "auth"
NOT_FOUND = "not_found"
MALFORMED_RESPONSE = "malformed"
IO_ERROR = "io"
CONFLICT_SIZE_MISMATCH = "conflict_size_mismatch"


def http_status_code(status: int) -> str:
    return f"http_{status}"


@dataclass
class WebDavError:
    """A classified failure of a single remote call."""
    category: ErrorCategory
    code: str
    message: str = ""
    status_code: Optional[int] = None

    @property
    def is_transient(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT

    @property
    def is_terminal(self) -> bool:
        return not self.is_transient

    @property
    def is_unreachable(self) -> bool:
        return self.code == UNREACHABLE

    @classmethod
    def from_status(cls, status: int, message: str = "") -> "WebDavError":
        """Classify an unexpected HTTP status."""
        if status in (401, 403):
            return cls(ErrorCategory.AUTH, AUTH_FAILED, message or f"HTTP {status}", status)
        if status == 404:
            return cls(ErrorCategory.NOT_FOUND, NOT_FOUND, message or "Not found", status)
        if status >= 500 or status in (408, 425, 429):
            return cls(ErrorCategory.TRANSIENT, http_status_code(status), message or f"HTTP {status}", status)
        return cls(ErrorCategory.UNSUPPORTED, http_status_code(status), message or f"HTTP {status}", status)


@dataclass
class WebDavResult(Generic[T]):
    """Either data or a classified error."""
    data: Optional[T] = None
    error: Optional[WebDavError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: Optional[T] = None) -> "WebDavResult[T]":
        return cls(data=data)

    @classmethod
    def failure(cls, error: WebDavError) -> "WebDavResult[T]":
        return cls(error=error)
