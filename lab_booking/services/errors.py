from __future__ import annotations

from typing import Any


class BookingError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "kind": self.kind}
        payload.update(self.details)
        return payload


class NotFoundError(BookingError):
    kind = "not-found"
    status_code = 404


class InvalidStateError(BookingError):
    """Wrong instrument status, duplicate checkout, missing checkout or instrument in use."""

    kind = "invalid-state"

    def __init__(self, message: str, reason: str, **details: Any):
        super().__init__(message, reason=reason, **details)
        self.reason = reason


class CapacityExceededError(BookingError):
    kind = "insufficient-capacity"

    def __init__(self, available: int):
        super().__init__(f"Not enough quantity available. Available: {available}", available=available)
        self.available = available


class UnauthorizedError(BookingError):
    kind = "unauthorized"
    status_code = 403


class ValidationError(BookingError):
    kind = "validation"


class ConflictError(BookingError):
    kind = "conflict"
    status_code = 409


def require_admin(role: str | None) -> None:
    if str(role or "").strip().lower() != "admin":
        raise UnauthorizedError("Admin role required.")
