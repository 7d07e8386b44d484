# Overview: Service-layer operations for orders; encapsulates business logic and database work.

"""
Order lifecycle

WHY: An order either exists with every ticket reserved and its promotion
consumed, or it does not exist at all. create_order runs as one database
transaction; any failure rolls the transaction back, which is the
compensating release of every reservation taken earlier in the same call.

Dead orders (failed, cancelled, expired, refunded) give their holds back
through release_order_holds(), which is idempotent per item and per order.
"""

from __future__ import annotations

import secrets
import string
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..errors import (
    ForbiddenError,
    NotFoundError,
    OrderNotPendingError,
    QuantityOutOfRangeError,
    TicketWindowClosedError,
    ValidationError,
)
from ..models import Event, Order, OrderItem, User
from ..models.events import EVENT_APPROVED
from ..models.orders import (
    CHECK_IN_CANCELLED,
    CHECK_IN_NOT_CHECKED,
    ORDER_CANCELLED,
    ORDER_PENDING,
)
from boxoffice.time_utils import utcnow
from . import inventory_service, promotion_service
from .concurrency import compare_and_set, lock_for_update, run_with_retry


TICKET_CODE_ALPHABET = string.ascii_uppercase + string.digits
TICKET_CODE_LENGTH = 12
MAX_CODE_ATTEMPTS = 10


# =============================================================================
# IDENTIFIERS
# =============================================================================

def _code_exists(column, value: str) -> bool:
    with db.session.no_autoflush:
        return db.session.query(column).filter(column == value).first() is not None


def generate_ticket_code(taken: set[str] | None = None) -> str:
    """Fresh 12-character [A-Z0-9] ticket code not present in order_items."""
    taken = taken if taken is not None else set()
    for _ in range(MAX_CODE_ATTEMPTS):
        code = "".join(secrets.choice(TICKET_CODE_ALPHABET) for _ in range(TICKET_CODE_LENGTH))
        if code in taken or _code_exists(OrderItem.ticket_code, code):
            continue
        taken.add(code)
        return code
    raise RuntimeError("Could not generate a unique ticket code")


def generate_order_reference() -> str:
    """Opaque booking reference, e.g. BO-3F9A61C2D4."""
    for _ in range(MAX_CODE_ATTEMPTS):
        reference = f"BO-{secrets.token_hex(5).upper()}"
        if not _code_exists(Order.reference, reference):
            return reference
    raise RuntimeError("Could not generate a unique order reference")


# =============================================================================
# CREATE
# =============================================================================

def _group_items(items: list[dict]) -> dict[int, int]:
    """Total quantity per ticket type, in first-appearance order."""
    grouped: dict[int, int] = {}
    for item in items:
        grouped[item["ticket_type_id"]] = grouped.get(item["ticket_type_id"], 0) + item["quantity"]
    return grouped


def _check_event_open(event: Event | None, event_id: int, now: datetime) -> Event:
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")
    if event.approval_status != EVENT_APPROVED:
        raise ValidationError(
            "Event is not open for booking",
            details={"event_id": event.id, "approval_status": event.approval_status},
        )
    if event.event_date is not None and event.event_date <= now:
        raise TicketWindowClosedError(
            "Event has already started",
            details={"event_id": event.id},
        )
    return event


def create_order(
    user_id: int,
    event_id: int,
    items: list[dict],
    promotion_code: str | None = None,
    billing: dict | None = None,
    *,
    now: datetime | None = None,
) -> Order:
    """
    Reserve tickets, redeem an optional promotion and persist a pending order.

    items: [{"ticket_type_id", "quantity", "attendee_name"?, "attendee_email"?}, ...]
    billing: {"name", "email", "address"?}

    Raises:
        NotFoundError, ValidationError, TicketWindowClosedError,
        QuantityOutOfRangeError, InsufficientInventoryError,
        PromotionInvalidError, PromotionExpiredError, PromotionExhaustedError
    """
    if not items:
        raise ValidationError("Order must contain at least one item")
    for item in items:
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise QuantityOutOfRangeError(
                "Quantity must be a positive integer",
                details={"ticket_type_id": item.get("ticket_type_id"), "quantity": quantity},
            )
    billing = billing or {}
    if not billing.get("name") or not billing.get("email"):
        raise ValidationError("billing name and email are required")

    def _op():
        current = now or utcnow()

        event = _check_event_open(db.session.get(Event, event_id), event_id, current)

        # One reservation per ticket type; a rollback below undoes all of them.
        tokens = {}
        for ticket_type_id, quantity in _group_items(items).items():
            tokens[ticket_type_id] = inventory_service.reserve(
                ticket_type_id, quantity, event_id=event.id, now=current
            )

        currencies = {token.currency for token in tokens.values()}
        if len(currencies) > 1:
            raise ValidationError(
                "All tickets in an order must share one currency",
                details={"currencies": sorted(currencies)},
            )
        currency = currencies.pop()

        subtotal = 0
        for item in items:
            subtotal += tokens[item["ticket_type_id"]].unit_price_cents * item["quantity"]

        redemption = None
        if promotion_code:
            redemption = promotion_service.redeem(promotion_code, event.id, subtotal, now=current)

        discount = redemption.discount_cents if redemption else 0

        order = Order(
            reference=generate_order_reference(),
            user_id=user_id,
            event_id=event.id,
            promotion_id=redemption.promotion_id if redemption else None,
            status=ORDER_PENDING,
            subtotal_cents=subtotal,
            discount_amount_cents=discount,
            total_amount_cents=subtotal - discount,
            currency=currency,
            billing_name=billing["name"],
            billing_email=billing["email"],
            billing_address=billing.get("address"),
        )
        db.session.add(order)

        issued: set[str] = set()
        for item in items:
            token = tokens[item["ticket_type_id"]]
            db.session.add(OrderItem(
                order=order,
                ticket_type_id=token.ticket_type_id,
                quantity=item["quantity"],
                unit_price_cents=token.unit_price_cents,
                total_price_cents=token.unit_price_cents * item["quantity"],
                ticket_code=generate_ticket_code(issued),
                attendee_name=item.get("attendee_name"),
                attendee_email=item.get("attendee_email"),
                check_in_status=CHECK_IN_NOT_CHECKED,
            ))

        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# RELEASE / CANCEL / EXPIRE
# =============================================================================

def release_order_holds(order: Order) -> None:
    """
    Give back everything a dead order holds.

    Runs inside the caller's transaction. Safe to call any number of times:
    inventory is keyed by OrderItem.inventory_released, promotion usage by
    Order.promotion_released. Unchecked tickets become cancelled; tickets
    already scanned at the door keep their checked_in state.
    """
    inventory_service.release_order_items(order)

    if order.promotion_id is not None:
        promotion_service.release(order.promotion.code, order_id=order.id)

    for item in order.items:
        compare_and_set(
            OrderItem,
            item.id,
            OrderItem.check_in_status == CHECK_IN_NOT_CHECKED,
            check_in_status=CHECK_IN_CANCELLED,
        )


def can_manage_order(order: Order, actor: User) -> bool:
    """Owner, event organizer or admin."""
    if actor.is_admin:
        return True
    if order.user_id == actor.id:
        return True
    return order.event is not None and order.event.organizer_id == actor.id


def cancel_order(order_id: int, actor: User, reason: str | None = None) -> Order:
    """Cancel a pending order and release its holds."""
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if not can_manage_order(order, actor):
            raise ForbiddenError("Not allowed to cancel this order")

        cancelled = compare_and_set(
            Order,
            order.id,
            Order.status == ORDER_PENDING,
            status=ORDER_CANCELLED,
            cancelled_at=utcnow(),
            cancel_reason=reason or "Cancelled by user",
        )
        if not cancelled:
            raise OrderNotPendingError(
                f"Cannot cancel order with status {order.status}",
                details={"order_id": order.id, "status": order.status},
            )

        release_order_holds(order)
        db.session.commit()
        return order

    return run_with_retry(_op)


def expire_pending_orders(older_than_minutes: int | None = None, *, now: datetime | None = None) -> int:
    """
    Cancel pending orders older than the TTL and release their holds.

    Each order is its own unit of work; an order paid meanwhile simply fails
    the status guard and is skipped. Returns the number of orders expired.
    """
    if older_than_minutes is None:
        older_than_minutes = current_app.config.get("PENDING_ORDER_TTL_MINUTES", 30)
    current = now or utcnow()
    cutoff = current - timedelta(minutes=older_than_minutes)

    stale_ids = [
        row.id
        for row in db.session.query(Order.id)
        .filter(Order.status == ORDER_PENDING, Order.created_at < cutoff)
        .order_by(Order.id)
        .all()
    ]
    db.session.rollback()

    expired = 0
    for order_id in stale_ids:
        def _op(order_id=order_id):
            moved = compare_and_set(
                Order,
                order_id,
                Order.status == ORDER_PENDING,
                status=ORDER_CANCELLED,
                cancelled_at=current,
                cancel_reason="Payment window expired",
            )
            if not moved:
                db.session.rollback()
                return False
            release_order_holds(db.session.get(Order, order_id))
            db.session.commit()
            return True

        if run_with_retry(_op):
            expired += 1

    current_app.logger.info(
        "Expired %d pending orders older than %d minutes", expired, older_than_minutes
    )
    return expired


# =============================================================================
# READ
# =============================================================================

def get_order(order_id: int, actor: User) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    if not can_manage_order(order, actor):
        raise ForbiddenError("Not allowed to view this order")
    return order


def list_orders_for_user(user_id: int, status: str | None = None) -> list[Order]:
    q = db.session.query(Order).filter_by(user_id=user_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Order.created_at.desc(), Order.id.desc()).all()
