# Overview: Flask API routes for check-in operations; parses input and returns JSON responses.

# backend/boxoffice/routes/check_in.py
"""Door check-in API routes (event organizer or admin)"""

from flask import Blueprint, jsonify, g, current_app

from ..errors import TicketingError, error_response
from ..models.auth import ROLE_ORGANIZER
from ..services import check_in_service
from ..decorators import require_auth, require_role


check_in_bp = Blueprint("check_in", __name__, url_prefix="/api/organizer")


@check_in_bp.put("/bookings/<int:booking_id>/check-in")
@require_auth
@require_role(ROLE_ORGANIZER)
def check_in_booking_route(booking_id: int):
    try:
        item = check_in_service.check_in(booking_id, g.current_user)
        return jsonify({"booking": item.to_dict(), "message": "Checked in"}), 200
    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to check in booking")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@check_in_bp.put("/tickets/<ticket_code>/check-in")
@require_auth
@require_role(ROLE_ORGANIZER)
def check_in_ticket_route(ticket_code: str):
    try:
        item = check_in_service.check_in_by_code(ticket_code, g.current_user)
        return jsonify({"booking": item.to_dict(), "message": "Checked in"}), 200
    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to check in ticket")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@check_in_bp.get("/events/<int:event_id>/check-ins")
@require_auth
@require_role(ROLE_ORGANIZER)
def check_in_summary_route(event_id: int):
    try:
        summary = check_in_service.get_check_in_summary(event_id, g.current_user)
        return jsonify({"summary": summary}), 200
    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load check-in summary")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500
