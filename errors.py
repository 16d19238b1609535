"""
Error kinds raised by the domain layer.

Each error carries the HTTP status it maps to; main.py turns them into the
standard `{message, error}` body.
"""

from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    error: Optional[str] = None

    def __init__(self, message: str, error: Any = None):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error

    def to_body(self) -> dict:
        body = {"message": self.message}
        if self.error is not None:
            body["error"] = self.error
        return body


class ValidationError(AppError):
    status_code = 400


class InvalidState(AppError):
    status_code = 400
    error = "invalid_state"


class InvalidTransition(AppError):
    status_code = 400
    error = "invalid_transition"


class Conflict(AppError):
    status_code = 400
    error = "conflict"


class CapacityExceeded(AppError):
    status_code = 400
    error = "capacity_exceeded"


class Unauthorized(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class StoreUnavailable(AppError):
    status_code = 503
    error = "Database unavailable"
