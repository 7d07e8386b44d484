# Overview: Flask API routes for payment operations; parses input and returns JSON responses.

# backend/boxoffice/routes/payments.py
"""
Payment API routes

- initialize: start a Chapa checkout or get manual payment instructions
- callback / webhook: provider notifications (never answer 5xx to a
  malformed or forged payload; a duplicate delivery is acknowledged with 200)
- manual/verify, refund: organizer/admin back-office actions
- flagged: admin review and refund of late payments for dead orders
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import (
    DuplicateWebhookError,
    TicketingError,
    ValidationError,
    WebhookRejectedError,
    error_response,
)
from ..models.auth import ROLE_ADMIN, ROLE_ORGANIZER
from ..services import payment_service
from ..decorators import require_auth, require_role
from ..validation import coerce_int


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _payment_payload(txn) -> dict:
    return {
        "payment": txn.to_dict(),
        "order": txn.order.to_dict(include_items=False),
    }


@payments_bp.post("/initialize")
@require_auth
def initialize_payment_route():
    """
    Body: {order_id, payment_method: "chapa" | "bank_transfer" | "mobile_money"}

    Returns redirect_url for Chapa or instructions for manual methods.
    502 PaymentProviderError is retryable; the order stays pending.
    """
    try:
        data = request.get_json(silent=True) or {}
        if "order_id" not in data or not data.get("payment_method"):
            raise ValidationError("order_id and payment_method required")

        initiation = payment_service.initiate_payment(
            coerce_int("order_id", data["order_id"]),
            g.current_user,
            data["payment_method"],
        )
        return jsonify(initiation.to_dict()), 200

    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to initialize payment")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@payments_bp.get("/<provider>/callback")
def payment_callback_route(provider: str):
    """Browser return from the provider: ?tx_ref=&status=&transaction_id="""
    tx_ref = request.args.get("tx_ref")
    try:
        txn = payment_service.handle_callback(provider, tx_ref)
        return jsonify(_payment_payload(txn)), 200

    except DuplicateWebhookError:
        txn = payment_service.get_transaction(provider, tx_ref)
        return jsonify({**_payment_payload(txn), "duplicate": True}), 200
    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process payment callback")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@payments_bp.post("/<provider>/webhook")
def payment_webhook_route(provider: str):
    """
    Provider server-to-server notification.

    Signed with HMAC-SHA256 of the raw body (Chapa-Signature header).
    """
    signature = request.headers.get("Chapa-Signature") or request.headers.get("X-Chapa-Signature")
    try:
        txn = payment_service.handle_webhook(provider, request.get_data(), signature)
        if txn is None:
            return jsonify({"received": True, "ignored": True}), 200
        return jsonify({"received": True, "status": txn.status}), 200

    except DuplicateWebhookError as e:
        current_app.logger.info("Duplicate %s webhook: %s", provider, e.details)
        return jsonify({"received": True, "duplicate": True}), 200
    except WebhookRejectedError as e:
        current_app.logger.warning("Rejected %s webhook: %s", provider, e.message)
        return error_response(e)
    except TicketingError as e:
        current_app.logger.warning("Unprocessable %s webhook: %s", provider, e.message)
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@payments_bp.post("/manual/verify")
@require_auth
@require_role(ROLE_ORGANIZER)
def verify_manual_payment_route():
    """Body: {transaction_reference, succeeded?: true, note?}"""
    try:
        data = request.get_json(silent=True) or {}
        tx_ref = data.get("transaction_reference")
        if not tx_ref:
            raise ValidationError("transaction_reference required")
        succeeded = data.get("succeeded", True)
        if not isinstance(succeeded, bool):
            raise ValidationError("succeeded must be true or false")

        txn = payment_service.verify_manual_payment(tx_ref, g.current_user, succeeded, data.get("note"))
        return jsonify(_payment_payload(txn)), 200

    except DuplicateWebhookError as e:
        return jsonify({"error": e.kind, "message": "Payment already verified", "details": e.details}), 409
    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify manual payment")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@payments_bp.post("/refund")
@require_auth
@require_role(ROLE_ORGANIZER)
def refund_route():
    """Body: {order_id, amount_cents?, reason?}"""
    try:
        data = request.get_json(silent=True) or {}
        if "order_id" not in data:
            raise ValidationError("order_id required")
        amount = data.get("amount_cents")

        order = payment_service.refund_order(
            coerce_int("order_id", data["order_id"]),
            g.current_user,
            coerce_int("amount_cents", amount) if amount is not None else None,
            data.get("reason"),
        )
        return jsonify({"order": order.to_dict(), "message": "Refund processed"}), 200

    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund order")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@payments_bp.get("/flagged")
@require_auth
@require_role(ROLE_ADMIN)
def list_flagged_payments_route():
    try:
        flagged = payment_service.list_flagged_payments(g.current_user)
        return jsonify({"payments": [txn.to_dict() for txn in flagged]}), 200

    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list flagged payments")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@payments_bp.post("/flagged/<provider>/<tx_ref>/refund")
@require_auth
@require_role(ROLE_ADMIN)
def refund_flagged_payment_route(provider: str, tx_ref: str):
    """Body: {reason?}"""
    try:
        data = request.get_json(silent=True) or {}
        txn = payment_service.refund_flagged_payment(provider, tx_ref, g.current_user, data.get("reason"))
        return jsonify({**_payment_payload(txn), "message": "Refund processed"}), 200

    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund flagged payment")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500
