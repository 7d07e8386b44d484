# Overview: Flask API routes for ticket type operations; parses input and returns JSON responses.

# backend/boxoffice/routes/ticket_types.py
"""Ticket type API routes (organizer inventory maintenance)"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import TicketingError, error_response
from ..models import TicketType
from ..models.auth import ROLE_ORGANIZER
from ..services import inventory_service
from ..decorators import require_auth, require_role
from ..validation import TICKET_TYPE_POLICY, enforce_rules_ticket_type, validate_payload


ticket_types_bp = Blueprint("ticket_types", __name__, url_prefix="/api")


@ticket_types_bp.get("/events/<int:event_id>/ticket-types")
def list_ticket_types_route(event_id: int):
    """Public: ticket types of an event with live availability."""
    try:
        ticket_types = inventory_service.list_ticket_types(event_id)
        return jsonify({"ticket_types": [t.to_dict() for t in ticket_types]}), 200
    except Exception:
        current_app.logger.exception("Failed to list ticket types")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@ticket_types_bp.post("/events/<int:event_id>/ticket-types")
@require_auth
@require_role(ROLE_ORGANIZER)
def create_ticket_type_route(event_id: int):
    try:
        patch = validate_payload(
            model=TicketType,
            payload=request.get_json(silent=True),
            policy=TICKET_TYPE_POLICY,
            partial=False,
        )
        enforce_rules_ticket_type(patch)

        ticket_type = inventory_service.create_ticket_type(event_id, patch, g.current_user)
        return jsonify({"ticket_type": ticket_type.to_dict()}), 201

    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create ticket type")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@ticket_types_bp.patch("/ticket-types/<int:ticket_type_id>")
@require_auth
@require_role(ROLE_ORGANIZER)
def update_ticket_type_route(ticket_type_id: int):
    """Patch a ticket type. `sold` is not writable; quantity cannot drop below it."""
    try:
        patch = validate_payload(
            model=TicketType,
            payload=request.get_json(silent=True),
            policy=TICKET_TYPE_POLICY,
            partial=True,
        )
        enforce_rules_ticket_type(patch)

        ticket_type = inventory_service.update_ticket_type(ticket_type_id, patch, g.current_user)
        return jsonify({"ticket_type": ticket_type.to_dict()}), 200

    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update ticket type")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500
