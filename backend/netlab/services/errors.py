"""Error taxonomy shared by reservation, payment and lifecycle services."""

from __future__ import annotations


class NetLabError(RuntimeError):
    """Base error for reservation lifecycle services."""

    code = "error"
    status_code = 400


class ReservationValidationError(NetLabError):
    """Raised when a request is malformed or logically impossible."""

    code = "validation"
    status_code = 422


class LabNotFound(ReservationValidationError):
    """Raised when a lab reference does not resolve."""


class ReservationNotFound(NetLabError):
    """Raised when a reservation is unknown or not visible to the caller."""

    code = "not_found"
    status_code = 404


class PaymentNotFound(NetLabError):
    """Raised when a payment cannot be correlated."""

    code = "not_found"
    status_code = 404


class ReservationConflict(NetLabError):
    """Raised when a reservation overlaps an existing booking."""

    code = "conflict"
    status_code = 422


class InvalidTransition(NetLabError):
    """Raised when a status change is not allowed from the current state."""

    code = "invalid_transition"
    status_code = 409


class SessionAlreadyOpen(NetLabError):
    """Raised when a lab already has an open usage record."""

    code = "session_open"
    status_code = 409


class PaymentAlreadyCompleted(NetLabError):
    code = "already_paid"
    status_code = 422


class WebhookAuthenticityError(NetLabError):
    """Raised when a webhook signature is missing or wrong."""

    code = "unauthorized"
    status_code = 401


class MalformedNotification(NetLabError):
    code = "malformed"
    status_code = 400


class ExternalUnavailableError(NetLabError):
    """Raised when the control plane or the payment processor fails or times out."""

    code = "external_unavailable"
    status_code = 503

    def __init__(self, message: str, *, source: str, detail: str | None = None):
        super().__init__(message)
        self.source = source
        self.detail = detail
