# Overview: Flask API routes for order operations; parses input and returns JSON responses.

# backend/boxoffice/routes/orders.py
"""Order API routes: purchase, view, cancel"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import TicketingError, error_response
from ..services import order_service, payment_service
from ..decorators import require_auth
from ..validation import parse_order_request


orders_bp = Blueprint("orders", __name__, url_prefix="/api")


@orders_bp.post("/events/<int:event_id>/orders")
@require_auth
def create_order_route(event_id: int):
    """
    Reserve tickets and create a pending order.

    Body:
        tickets: [{ticketTypeId, quantity, attendeeName?, attendeeEmail?}]
        promotionCode: optional
        billingName, billingEmail, billingAddress?
    """
    try:
        items, promotion_code, billing = parse_order_request(request.get_json(silent=True))

        order = order_service.create_order(
            g.current_user.id,
            event_id,
            items,
            promotion_code=promotion_code,
            billing=billing,
        )
        return jsonify({"order": order.to_dict()}), 201

    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@orders_bp.get("/orders")
@require_auth
def list_orders_route():
    """List the current user's orders, newest first. Optional ?status= filter."""
    try:
        orders = order_service.list_orders_for_user(g.current_user.id, request.args.get("status"))
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@orders_bp.get("/orders/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id, g.current_user)
        return jsonify({"order": order.to_dict()}), 200
    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@orders_bp.post("/orders/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    """Cancel a pending order. Owner, event organizer or admin."""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.cancel_order(order_id, g.current_user, data.get("reason"))
        return jsonify({"order": order.to_dict()}), 200
    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@orders_bp.get("/orders/<int:order_id>/payments")
@require_auth
def list_order_payments_route(order_id: int):
    try:
        transactions = payment_service.list_payment_transactions(order_id, g.current_user)
        return jsonify({"payments": [t.to_dict() for t in transactions]}), 200
    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list order payments")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500
