# backend/boxoffice/routes/system.py
"""
System health endpoint.

Reports database connectivity and the size of the pending-order backlog
that the expiry sweep is expected to drain.
"""

import time
from datetime import timedelta

from flask import Blueprint, current_app
from ..extensions import db
from ..models import Order, TicketType
from ..models.orders import ORDER_PENDING
from boxoffice.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        ticket_type_count = db.session.query(TicketType).count()
        order_count = db.session.query(Order).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "ticket_types": ticket_type_count,
                "orders": order_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_order_sweep_health() -> dict:
    """
    Pending orders older than twice the TTL mean the expiry sweep is not running.
    """
    start_time = time.time()
    try:
        ttl = current_app.config.get("PENDING_ORDER_TTL_MINUTES", 30)
        cutoff = utcnow() - timedelta(minutes=ttl * 2)
        stale = db.session.query(Order).filter(
            Order.status == ORDER_PENDING,
            Order.created_at < cutoff,
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000

        result = {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"stale_pending_orders": stale, "ttl_minutes": ttl},
        }
        if stale:
            result["status"] = "degraded"
            result["warning"] = "Pending orders are not being expired; is `flask orders expire-pending` scheduled?"
        return result
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Order sweep health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Order sweep check error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    sweep_health = check_order_sweep_health()

    all_checks = [database_health, sweep_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "order_sweep": sweep_health,
        }
    }

    return response, http_status
