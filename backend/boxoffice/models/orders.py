from __future__ import annotations

from ..extensions import db
from boxoffice.time_utils import to_utc_z


ORDER_PENDING = "pending"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"
ORDER_FAILED = "failed"

CHECK_IN_NOT_CHECKED = "not_checked"
CHECK_IN_CHECKED_IN = "checked_in"
CHECK_IN_CANCELLED = "cancelled"


class Order(db.Model):
    """
    Ticket purchase document.

    INVARIANT: total_amount_cents = sum(items.total_price_cents) - discount_amount_cents,
    with discount_amount_cents >= 0 and the total never negative.

    Lifecycle:
    - pending: created by order_service with inventory reserved
    - completed / failed: driven by payment_service
    - cancelled: explicit cancel or expiry sweep
    - refunded: refund of a completed order
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("discount_amount_cents >= 0", name="ck_orders_discount_non_negative"),
        db.CheckConstraint("total_amount_cents >= 0", name="ck_orders_total_non_negative"),
        db.CheckConstraint(
            "status IN ('pending', 'completed', 'cancelled', 'refunded', 'failed')",
            name="ck_orders_status",
        ),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(32), nullable=False, unique=True, index=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)
    promotion_id = db.Column(db.Integer, db.ForeignKey("promotions.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING, index=True)

    # Amounts (all in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="ETB")

    # Set once the promotion usage has been given back (idempotent release)
    promotion_released = db.Column(db.Boolean, nullable=False, default=False)

    payment_method = db.Column(db.String(32), nullable=True)

    billing_name = db.Column(db.String(255), nullable=False)
    billing_email = db.Column(db.String(255), nullable=False)
    billing_address = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refund_amount_cents = db.Column(db.Integer, nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)

    user = db.relationship("User", back_populates="orders")
    event = db.relationship("Event", back_populates="orders")
    promotion = db.relationship("Promotion", back_populates="orders")
    items = db.relationship(
        "OrderItem", back_populates="order", lazy=True, order_by="OrderItem.id"
    )
    payment_transactions = db.relationship(
        "PaymentTransaction", back_populates="order", lazy=True, order_by="PaymentTransaction.id"
    )

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "reference": self.reference,
            "user_id": self.user_id,
            "event_id": self.event_id,
            "promotion_id": self.promotion_id,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "total_amount_cents": self.total_amount_cents,
            "currency": self.currency,
            "payment_method": self.payment_method,
            "billing_name": self.billing_name,
            "billing_email": self.billing_email,
            "billing_address": self.billing_address,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "failed_at": to_utc_z(self.failed_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "refund_amount_cents": self.refund_amount_cents,
            "refund_reason": self.refund_reason,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    One ticket line on an order. Doubles as the attendee's booking.

    ticket_code is globally unique and never changes once issued.
    check_in_status is only moved by check_in_service and by the
    release path of a dead order.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        db.CheckConstraint(
            "check_in_status IN ('not_checked', 'checked_in', 'cancelled')",
            name="ck_order_items_check_in_status",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    ticket_type_id = db.Column(db.Integer, db.ForeignKey("ticket_types.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_price_cents = db.Column(db.Integer, nullable=False)

    ticket_code = db.Column(db.String(32), nullable=False, unique=True, index=True)

    attendee_name = db.Column(db.String(255), nullable=True)
    attendee_email = db.Column(db.String(255), nullable=True)

    check_in_status = db.Column(db.String(16), nullable=False, default=CHECK_IN_NOT_CHECKED, index=True)
    checked_in_at = db.Column(db.DateTime(timezone=True), nullable=True)
    checked_in_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    # Set once this item's quantity has been returned to its ticket type
    inventory_released = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")
    ticket_type = db.relationship("TicketType", back_populates="order_items")
    checked_in_by = db.relationship("User", foreign_keys=[checked_in_by_user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "ticket_type_id": self.ticket_type_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_price_cents": self.total_price_cents,
            "ticket_code": self.ticket_code,
            "attendee_name": self.attendee_name,
            "attendee_email": self.attendee_email,
            "check_in_status": self.check_in_status,
            "checked_in_at": to_utc_z(self.checked_in_at),
            "checked_in_by_user_id": self.checked_in_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
