"""Caller-facing errors for missing resources and invalid state transitions."""

from __future__ import annotations


class AutopilotError(Exception):
    """Base error. ``status_code`` is the HTTP status an API boundary should use."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AutopilotError):
    status_code = 400


class InvalidStateError(AutopilotError):
    status_code = 400


class NotFoundError(AutopilotError):
    status_code = 404


class ConflictError(AutopilotError):
    status_code = 409
