# Overview: Service-layer operations for ticket inventory; encapsulates business logic and database work.

"""
Ticket Inventory Invariants (authoritative)

- 0 <= sold <= quantity for every ticket type, for every reader.
- available = quantity - sold; it is derived, never stored.
- `sold` only moves through reserve() (checked increment) and release()
  (checked decrement). Organizer edits never touch it.
- Reservation is a single guarded UPDATE evaluated by the database:
      UPDATE ticket_types SET sold = sold + :q
      WHERE id = :id AND sold + :q <= quantity
  Two concurrent reserves for the last unit cannot both match.
- Release is idempotent per order item: the item's inventory_released flag
  is flipped false -> true first, and only the caller that flipped it
  decrements `sold`.
- Quantity bounds and the sale window are checked before reserving and
  fail with QuantityOutOfRange / TicketWindowClosed, not InsufficientInventory.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..extensions import db
from ..errors import (
    ForbiddenError,
    InsufficientInventoryError,
    NotFoundError,
    QuantityOutOfRangeError,
    TicketWindowClosedError,
    ValidationError,
)
from ..models import Event, OrderItem, TicketType, User
from ..models.orders import Order
from boxoffice.time_utils import utcnow
from .concurrency import compare_and_set, run_with_retry


@dataclass(frozen=True)
class ReservationToken:
    """Proof that `quantity` units of a ticket type were taken in the current transaction."""
    ticket_type_id: int
    quantity: int
    unit_price_cents: int
    currency: str


# =============================================================================
# RESERVE / RELEASE
# =============================================================================

def check_purchase_rules(ticket_type: TicketType, quantity: int, now: datetime | None = None) -> None:
    """
    Validate quantity bounds and sale window for a purchase of `quantity` units.

    Raises:
        QuantityOutOfRangeError: quantity outside [min_per_order, max_per_order]
        TicketWindowClosedError: outside sales_start_at / sales_end_at
    """
    now = now or utcnow()

    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise QuantityOutOfRangeError(
            "Quantity must be a positive integer",
            details={"ticket_type_id": ticket_type.id, "quantity": quantity},
        )

    min_per_order = ticket_type.min_per_order or 1
    max_per_order = ticket_type.max_per_order
    if quantity < min_per_order or (max_per_order is not None and quantity > max_per_order):
        raise QuantityOutOfRangeError(
            f"Quantity for '{ticket_type.name}' must be between "
            f"{min_per_order} and {max_per_order if max_per_order is not None else 'any'}",
            details={
                "ticket_type_id": ticket_type.id,
                "quantity": quantity,
                "min_per_order": min_per_order,
                "max_per_order": max_per_order,
            },
        )

    if ticket_type.sales_start_at is not None and now < ticket_type.sales_start_at:
        raise TicketWindowClosedError(
            f"Sales for '{ticket_type.name}' have not started",
            details={"ticket_type_id": ticket_type.id},
        )
    if ticket_type.sales_end_at is not None and now > ticket_type.sales_end_at:
        raise TicketWindowClosedError(
            f"Sales for '{ticket_type.name}' have ended",
            details={"ticket_type_id": ticket_type.id},
        )


def reserve(
    ticket_type_id: int,
    quantity: int,
    *,
    event_id: int | None = None,
    now: datetime | None = None,
) -> ReservationToken:
    """
    Atomically take `quantity` units of a ticket type.

    Runs inside the caller's transaction; the caller commits or rolls back.

    Raises:
        NotFoundError: ticket type missing or not part of event_id
        QuantityOutOfRangeError, TicketWindowClosedError: purchase rules
        InsufficientInventoryError: fewer than `quantity` units left
    """
    ticket_type = db.session.get(TicketType, ticket_type_id)
    if ticket_type is None or (event_id is not None and ticket_type.event_id != event_id):
        raise NotFoundError(
            f"Ticket type {ticket_type_id} not found",
            details={"ticket_type_id": ticket_type_id},
        )

    check_purchase_rules(ticket_type, quantity, now)

    reserved = compare_and_set(
        TicketType,
        ticket_type.id,
        TicketType.sold + quantity <= TicketType.quantity,
        sold=TicketType.sold + quantity,
    )
    if not reserved:
        raise InsufficientInventoryError(
            f"Not enough '{ticket_type.name}' tickets available",
            details={
                "ticket_type_id": ticket_type.id,
                "requested_quantity": quantity,
                "available": ticket_type.available,
            },
        )

    return ReservationToken(
        ticket_type_id=ticket_type.id,
        quantity=quantity,
        unit_price_cents=ticket_type.price_cents,
        currency=ticket_type.currency,
    )


def release(ticket_type_id: int, quantity: int, *, order_item_id: int) -> bool:
    """
    Return `quantity` units of a ticket type, at most once per order item.

    Runs inside the caller's transaction. Returns True when units were
    returned, False when this order item had already been released.
    """
    claimed = compare_and_set(
        OrderItem,
        order_item_id,
        OrderItem.inventory_released.is_(False),
        inventory_released=True,
    )
    if not claimed:
        return False

    restored = compare_and_set(
        TicketType,
        ticket_type_id,
        TicketType.sold >= quantity,
        sold=TicketType.sold - quantity,
    )
    if not restored:
        # sold < quantity would mean a double release slipped past the flag
        raise RuntimeError(
            f"Ticket type {ticket_type_id} cannot release {quantity} units for order item {order_item_id}"
        )
    return True


def release_order_items(order: Order) -> int:
    """Release every item of an order. Returns the number of units returned."""
    released_units = 0
    for item in order.items:
        if release(item.ticket_type_id, item.quantity, order_item_id=item.id):
            released_units += item.quantity
    return released_units


# =============================================================================
# TICKET TYPE MAINTENANCE (organizer)
# =============================================================================

def _ensure_can_manage(event: Event, actor: User) -> None:
    if actor.is_admin:
        return
    if event.organizer_id != actor.id:
        raise ForbiddenError("Only the event organizer can manage its ticket types")


def _validate_ticket_type_fields(ticket_type: TicketType) -> None:
    if ticket_type.price_cents is None or ticket_type.price_cents < 0:
        raise ValidationError("price_cents must be >= 0")
    if ticket_type.quantity is None or ticket_type.quantity < 0:
        raise ValidationError("quantity must be >= 0")
    if ticket_type.quantity < (ticket_type.sold or 0):
        raise ValidationError(
            "quantity cannot be lower than tickets already sold",
            details={"sold": ticket_type.sold},
        )
    if ticket_type.min_per_order is not None and ticket_type.min_per_order < 1:
        raise ValidationError("min_per_order must be >= 1")
    if (
        ticket_type.max_per_order is not None
        and ticket_type.max_per_order < (ticket_type.min_per_order or 1)
    ):
        raise ValidationError("max_per_order must be >= min_per_order")
    if (
        ticket_type.sales_start_at is not None
        and ticket_type.sales_end_at is not None
        and ticket_type.sales_end_at <= ticket_type.sales_start_at
    ):
        raise ValidationError("sales_end_at must be after sales_start_at")


def create_ticket_type(event_id: int, data: dict, actor: User) -> TicketType:
    """Create a ticket type for an event. `data` is already coerced by validation.py."""
    def _op():
        event = db.session.get(Event, event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        _ensure_can_manage(event, actor)

        ticket_type = TicketType(event_id=event_id, sold=0)
        for key, value in data.items():
            setattr(ticket_type, key, value)
        if ticket_type.min_per_order is None:
            ticket_type.min_per_order = 1
        if not ticket_type.currency:
            ticket_type.currency = "ETB"

        _validate_ticket_type_fields(ticket_type)

        db.session.add(ticket_type)
        db.session.commit()
        return ticket_type

    return run_with_retry(_op)


def update_ticket_type(ticket_type_id: int, data: dict, actor: User) -> TicketType:
    """
    Patch a ticket type.

    `quantity` is applied with a guarded UPDATE so a concurrent reservation
    can never leave quantity below sold.
    """
    def _op():
        ticket_type = db.session.get(TicketType, ticket_type_id)
        if ticket_type is None:
            raise NotFoundError(f"Ticket type {ticket_type_id} not found")
        _ensure_can_manage(ticket_type.event, actor)

        new_quantity = data.get("quantity")
        for key, value in data.items():
            if key != "quantity":
                setattr(ticket_type, key, value)
        _validate_ticket_type_fields(ticket_type)

        if new_quantity is not None:
            if new_quantity < 0:
                raise ValidationError("quantity must be >= 0")
            applied = compare_and_set(
                TicketType,
                ticket_type.id,
                TicketType.sold <= new_quantity,
                quantity=new_quantity,
            )
            if not applied:
                raise ValidationError(
                    "quantity cannot be lower than tickets already sold",
                    details={"sold": ticket_type.sold},
                )

        db.session.commit()
        return ticket_type

    return run_with_retry(_op)


def list_ticket_types(event_id: int) -> list[TicketType]:
    return (
        db.session.query(TicketType)
        .filter_by(event_id=event_id)
        .order_by(TicketType.id)
        .all()
    )
