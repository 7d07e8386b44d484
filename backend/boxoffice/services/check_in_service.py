# Overview: Service-layer operations for ticket check-in; encapsulates business logic and database work.

"""
Check-in state machine (per ticket)

    not_checked --check_in--> checked_in
    not_checked --order dies--> cancelled

checked_in and cancelled are terminal. The move is a guarded UPDATE on the
order item, so two scanners reading the same code admit the holder once.
"""

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..errors import (
    AlreadyCheckedInError,
    ForbiddenError,
    NotFoundError,
    OrderNotPendingError,
    TicketCancelledError,
)
from ..models import Event, Order, OrderItem, User
from ..models.orders import (
    CHECK_IN_CANCELLED,
    CHECK_IN_CHECKED_IN,
    CHECK_IN_NOT_CHECKED,
    ORDER_COMPLETED,
    ORDER_PENDING,
)
from boxoffice.time_utils import to_utc_z, utcnow
from .concurrency import compare_and_set, run_with_retry


def _ensure_can_check_in(event: Event, actor: User) -> None:
    if actor.is_admin:
        return
    if event.organizer_id != actor.id:
        raise ForbiddenError("Only the event organizer can check in attendees")


def _raise_for_state(item: OrderItem) -> None:
    if item.check_in_status == CHECK_IN_CHECKED_IN:
        raise AlreadyCheckedInError(
            "Ticket has already been checked in",
            details={"ticket_code": item.ticket_code, "checked_in_at": to_utc_z(item.checked_in_at)},
        )
    if item.check_in_status == CHECK_IN_CANCELLED:
        raise TicketCancelledError(
            "Ticket has been cancelled",
            details={"ticket_code": item.ticket_code},
        )


def _check_in_item(item: OrderItem, actor: User) -> OrderItem:
    _ensure_can_check_in(item.order.event, actor)
    _raise_for_state(item)

    if item.order.status != ORDER_COMPLETED:
        raise OrderNotPendingError(
            "Only tickets of paid orders can be checked in",
            details={"order_id": item.order_id, "status": item.order.status},
        )

    moved = compare_and_set(
        OrderItem,
        item.id,
        OrderItem.check_in_status == CHECK_IN_NOT_CHECKED,
        check_in_status=CHECK_IN_CHECKED_IN,
        checked_in_at=utcnow(),
        checked_in_by_user_id=actor.id,
    )
    if not moved:
        # Another scanner won, or the order died in between.
        _raise_for_state(item)
        raise TicketCancelledError("Ticket cannot be checked in", details={"ticket_code": item.ticket_code})

    db.session.commit()
    return item


def check_in(order_item_id: int, actor: User) -> OrderItem:
    """Check in a booking by its id."""
    def _op():
        item = db.session.get(OrderItem, order_item_id)
        if item is None:
            raise NotFoundError(f"Booking {order_item_id} not found")
        return _check_in_item(item, actor)

    return run_with_retry(_op)


def check_in_by_code(ticket_code: str, actor: User) -> OrderItem:
    """Check in a ticket by the code printed on it."""
    normalized = (ticket_code or "").strip().upper()

    def _op():
        item = db.session.query(OrderItem).filter_by(ticket_code=normalized).first()
        if item is None:
            raise NotFoundError(f"Ticket {normalized} not found")
        return _check_in_item(item, actor)

    return run_with_retry(_op)


def get_check_in_summary(event_id: int, actor: User) -> dict:
    """Ticket counts per check-in state for one event."""
    event = db.session.get(Event, event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")
    _ensure_can_check_in(event, actor)

    rows = (
        db.session.query(
            OrderItem.check_in_status,
            func.count(OrderItem.id),
            func.coalesce(func.sum(OrderItem.quantity), 0),
        )
        .join(Order, Order.id == OrderItem.order_id)
        # Pending orders have not issued anything yet
        .filter(Order.event_id == event_id, Order.status != ORDER_PENDING)
        .group_by(OrderItem.check_in_status)
        .all()
    )
    counts = {status: {"bookings": bookings, "tickets": int(tickets)} for status, bookings, tickets in rows}
    empty = {"bookings": 0, "tickets": 0}

    not_checked = counts.get(CHECK_IN_NOT_CHECKED, empty)
    checked_in = counts.get(CHECK_IN_CHECKED_IN, empty)
    cancelled = counts.get(CHECK_IN_CANCELLED, empty)
    return {
        "event_id": event_id,
        "issued": not_checked["tickets"] + checked_in["tickets"],
        "checked_in": checked_in["tickets"],
        "not_checked": not_checked["tickets"],
        "cancelled": cancelled["tickets"],
        "bookings": {
            CHECK_IN_NOT_CHECKED: not_checked["bookings"],
            CHECK_IN_CHECKED_IN: checked_in["bookings"],
            CHECK_IN_CANCELLED: cancelled["bookings"],
        },
    }
