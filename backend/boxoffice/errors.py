# Overview: Domain error taxonomy shared by services and routes.

"""
Ticketing errors.

Every error carries a stable `kind` (returned to API clients as "error"),
an HTTP status and optional structured details.

- Validation and state-guard errors are surfaced directly, no retry.
- Inventory/promotion contention errors are surfaced immediately; the caller
  resubmits.
- PaymentProviderError is the only retryable kind.
"""

from __future__ import annotations

from flask import jsonify


class TicketingError(Exception):
    """Base class for ticketing domain errors."""

    kind = "TicketingError"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(TicketingError):
    """400-level input problem."""
    kind = "ValidationError"
    status_code = 400


class NotFoundError(TicketingError):
    kind = "NotFound"
    status_code = 404


class ForbiddenError(TicketingError):
    kind = "Forbidden"
    status_code = 403


class UnauthorizedError(TicketingError):
    kind = "Unauthorized"
    status_code = 401


class InsufficientInventoryError(TicketingError):
    kind = "InsufficientInventory"
    status_code = 409


class TicketWindowClosedError(TicketingError):
    kind = "TicketWindowClosed"
    status_code = 409


class QuantityOutOfRangeError(TicketingError):
    kind = "QuantityOutOfRange"
    status_code = 400


class PromotionInvalidError(TicketingError):
    kind = "PromotionInvalid"
    status_code = 400


class PromotionExpiredError(TicketingError):
    kind = "PromotionExpired"
    status_code = 400


class PromotionExhaustedError(TicketingError):
    kind = "PromotionExhausted"
    status_code = 409


class OrderNotPendingError(TicketingError):
    """State-guard violation: the order is not in an eligible state."""
    kind = "OrderNotPending"
    status_code = 409


class PaymentProviderError(TicketingError):
    """Upstream payment provider failure. Safe for the caller to retry."""
    kind = "PaymentProviderError"
    status_code = 502
    retryable = True


class DuplicateWebhookError(TicketingError):
    """The provider transaction was already settled; nothing was re-applied."""
    kind = "DuplicateWebhook"
    status_code = 200


class WebhookRejectedError(TicketingError):
    """Malformed (400) or unauthenticated (401) provider payload."""
    kind = "WebhookRejected"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None, status_code: int | None = None):
        super().__init__(message, details)
        if status_code is not None:
            self.status_code = status_code


class AlreadyCheckedInError(TicketingError):
    kind = "AlreadyCheckedIn"
    status_code = 409


class TicketCancelledError(TicketingError):
    kind = "TicketCancelled"
    status_code = 409


def error_response(exc: TicketingError):
    """Flask response tuple for a domain error."""
    return jsonify(exc.to_dict()), exc.status_code
