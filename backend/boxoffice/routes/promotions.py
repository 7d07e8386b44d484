# Overview: Flask API routes for promotion operations; parses input and returns JSON responses.

# backend/boxoffice/routes/promotions.py
"""Promotion code API routes"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import TicketingError, ValidationError, error_response
from ..models import Promotion
from ..models.auth import ROLE_ORGANIZER
from ..services import promotion_service
from ..decorators import require_auth, require_role
from ..validation import PROMOTION_POLICY, coerce_int, enforce_rules_promotion, validate_payload


promotions_bp = Blueprint("promotions", __name__, url_prefix="/api")


@promotions_bp.get("/events/<int:event_id>/promotions")
@require_auth
@require_role(ROLE_ORGANIZER)
def list_promotions_route(event_id: int):
    try:
        active_only = request.args.get("active_only", "false").lower() == "true"
        promotions = promotion_service.list_promotions(event_id, g.current_user, active_only=active_only)
        return jsonify({"promotions": [p.to_dict() for p in promotions]}), 200
    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list promotions")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@promotions_bp.post("/events/<int:event_id>/promotions")
@require_auth
@require_role(ROLE_ORGANIZER)
def create_promotion_route(event_id: int):
    """
    Create a promotion code.

    discount_value: basis points for "percentage" (1000 = 10%), cents for "fixed".
    """
    try:
        patch = validate_payload(
            model=Promotion,
            payload=request.get_json(silent=True),
            policy=PROMOTION_POLICY,
            partial=False,
        )
        enforce_rules_promotion(patch)

        promo = promotion_service.create_promotion(event_id, patch, g.current_user)
        return jsonify({"promotion": promo.to_dict()}), 201

    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create promotion")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@promotions_bp.patch("/promotions/<int:promotion_id>")
@require_auth
@require_role(ROLE_ORGANIZER)
def update_promotion_route(promotion_id: int):
    try:
        patch = validate_payload(
            model=Promotion,
            payload=request.get_json(silent=True),
            policy=PROMOTION_POLICY,
            partial=True,
        )
        enforce_rules_promotion(patch)

        promo = promotion_service.update_promotion(promotion_id, patch, g.current_user)
        return jsonify({"promotion": promo.to_dict()}), 200

    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update promotion")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500


@promotions_bp.get("/events/<int:event_id>/promotions/preview")
@require_auth
def preview_promotion_route(event_id: int):
    """Check a code at checkout without consuming it: ?code=&subtotal_cents="""
    try:
        code = request.args.get("code")
        if not code:
            raise ValidationError("code is required")
        subtotal = coerce_int("subtotal_cents", request.args.get("subtotal_cents", ""))

        preview = promotion_service.preview_discount(code, event_id, subtotal)
        return jsonify({"preview": preview}), 200

    except TicketingError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to preview promotion")
        return jsonify({"error": "InternalError", "message": "Internal server error"}), 500
