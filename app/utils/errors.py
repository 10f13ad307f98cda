"""Standardized error payloads and the payment error taxonomy."""
from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class PaymentError(Exception):
    """Base class for errors raised by the payment services.

    ``code`` is the machine-readable error code returned to API clients and
    ``status_code`` the HTTP status the API layer renders it with.
    """

    status_code = 400
    default_code = "PAYMENT_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details)


class ValidationError(PaymentError):
    status_code = 422
    default_code = "VALIDATION_ERROR"


class NotFound(PaymentError):
    status_code = 404
    default_code = "NOT_FOUND"


class Forbidden(PaymentError):
    status_code = 403
    default_code = "FORBIDDEN"


class Conflict(PaymentError):
    status_code = 409
    default_code = "CONFLICT"


class GatewayUnavailable(PaymentError):
    """Outbound gateway call failed, timed out or was refused. Retryable by the caller."""

    status_code = 502
    default_code = "GATEWAY_UNAVAILABLE"


class InvalidTransition(PaymentError):
    status_code = 409
    default_code = "INVALID_TRANSITION"


__all__ = [
    "error_response",
    "PaymentError",
    "ValidationError",
    "NotFound",
    "Forbidden",
    "Conflict",
    "GatewayUnavailable",
    "InvalidTransition",
]
