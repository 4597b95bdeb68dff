"""
Error kinds raised by the booking service.

Exception Hierarchy:
    BookingServiceError
    ├── ValidationError - malformed input, not retryable as-is
    ├── NotFound - unknown booking or order
    │   └── OrderNotFound - the gateway does not know the order
    ├── Conflict - terminal-state contradiction or slot race
    ├── Unauthorized - bad or missing webhook signature
    └── GatewayError
        ├── GatewayUnavailable - transient upstream failure, safe to retry
        └── GatewayRejected - permanent upstream refusal

Each kind carries the HTTP status the API layer answers with, so routers
can let them propagate unchanged.
"""
from typing import Any, Optional


class BookingServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BookingServiceError):
    status_code = 400


class Unauthorized(BookingServiceError):
    status_code = 401


class NotFound(BookingServiceError):
    status_code = 404


class OrderNotFound(NotFound):
    pass


class Conflict(BookingServiceError):
    status_code = 409


class GatewayError(BookingServiceError):
    status_code = 502
    retryable = False


class GatewayRejected(GatewayError):
    status_code = 502


class GatewayUnavailable(GatewayError):
    status_code = 503
    retryable = True
