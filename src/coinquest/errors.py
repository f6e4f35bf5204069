"""
Domain error taxonomy.

Services raise these at the point a business rule is violated; the
exception handler registered in ``coinquest.middleware.error_handler``
turns them into JSON responses with the matching HTTP status.
"""

from __future__ import annotations

import math
from typing import Any


class AppError(Exception):
    """Base class for every error that maps onto an HTTP response."""

    status_code: int = 500
    default_detail: str = "Internal server error"

    def __init__(self, detail: str | None = None, **extra: Any) -> None:
        self.detail = detail or self.default_detail
        self.extra = extra
        super().__init__(self.detail)

    def to_dict(self) -> dict[str, Any]:
        """Response body for this error."""
        return {"detail": self.detail, **self.extra}

    def headers(self) -> dict[str, str] | None:
        return None


class ValidationError(AppError):
    status_code = 400
    default_detail = "Validation error"


class Conflict(AppError):
    status_code = 409
    default_detail = "Email already in use"


class InvalidCredentials(AppError):
    """Same status and message for unknown account and wrong password."""

    status_code = 401
    default_detail = "Invalid credentials"


class Unauthorized(AppError):
    status_code = 401
    default_detail = "Authentication required"


class InvalidState(AppError):
    status_code = 400
    default_detail = "No pending signup found. Please sign up again."


class Expired(AppError):
    status_code = 400
    default_detail = "Verification code has expired"


class InvalidCode(AppError):
    status_code = 400
    default_detail = "Invalid verification code"


class TooManyRequests(AppError):
    """Cooldown not yet elapsed; carries the remaining wait in whole seconds."""

    status_code = 429
    default_detail = "Please wait before requesting another code"

    def __init__(self, wait_seconds: float, detail: str | None = None) -> None:
        self.wait_seconds = max(1, math.ceil(wait_seconds))
        super().__init__(detail, waitSeconds=self.wait_seconds)

    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.wait_seconds)}


class InsufficientBalance(AppError):
    status_code = 409
    default_detail = "Insufficient balance"


class NotFound(AppError):
    status_code = 404
    default_detail = "Not found"


class DeliveryFailed(AppError):
    status_code = 500
    default_detail = "Error sending email. Please try again later."
