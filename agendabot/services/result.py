"""Outcome of a gateway call whose failure is an expected case rather than an exception."""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode:
    TRANSPORT_ERROR = "transport_error"
    TIMEOUT = "timeout"
    NOT_CONFIGURED = "not_configured"
    INVALID_ADDRESS = "invalid_address"


@dataclass(frozen=True)
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, code: str = ErrorCode.TRANSPORT_ERROR) -> "Result[T]":
        return cls(ok=False, error=error, error_code=code)

    def log_context(self) -> dict:
        """Fields describing this outcome for a structured log record."""
        if self.ok:
            return {"message_id": self.value}
        return {"error": self.error, "error_code": self.error_code}
