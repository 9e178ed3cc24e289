"""
Domain errors raised by the booking engine.

Every error carries a human-readable message, a stable machine code and a
details dict, and knows which HTTP status the router should surface it as.

  ValidationError       bad input; never retried
  NotFoundError         unknown listing or booking
  ConflictError         availability race lost; retry quote + reserve as a whole
  StateError            illegal lifecycle transition
  PolicyViolationError  guest cancellation outside the allowed window
  PaymentError          payment gateway failure or timeout
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import HTTPException, status


class BookingEngineError(Exception):
    """Base class for all engine errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationError(BookingEngineError):
    status_code = 422


class NotFoundError(BookingEngineError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT


class StateError(BookingEngineError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, current: str, attempted: str, message: str | None = None):
        self.current = current
        self.attempted = attempted
        super().__init__(
            message or f"Cannot transition booking from '{current}' to '{attempted}'",
            details={"current": current, "attempted": attempted},
        )


class PolicyViolationError(BookingEngineError):
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str, deadline: datetime):
        self.deadline = deadline
        super().__init__(message, details={"deadline": deadline.isoformat()})


class PaymentError(BookingEngineError):
    status_code = status.HTTP_502_BAD_GATEWAY
