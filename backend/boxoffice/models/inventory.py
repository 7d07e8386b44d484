from __future__ import annotations

from ..extensions import db
from boxoffice.time_utils import to_utc_z


class TicketType(db.Model):
    """
    A purchasable category of admission for an event.

    INVARIANT: 0 <= sold <= quantity, enforced by the check constraint and
    by the checked UPDATE in inventory_service.reserve. `sold` is never
    written from request payloads.
    """
    __tablename__ = "ticket_types"
    __table_args__ = (
        db.CheckConstraint("sold >= 0", name="ck_ticket_types_sold_non_negative"),
        db.CheckConstraint("sold <= quantity", name="ck_ticket_types_sold_within_quantity"),
        db.CheckConstraint("price_cents >= 0", name="ck_ticket_types_price_non_negative"),
        db.CheckConstraint("min_per_order >= 1", name="ck_ticket_types_min_per_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)

    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)

    price_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="ETB")

    quantity = db.Column(db.Integer, nullable=False)
    sold = db.Column(db.Integer, nullable=False, default=0)

    min_per_order = db.Column(db.Integer, nullable=False, default=1)
    max_per_order = db.Column(db.Integer, nullable=True)

    sales_start_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sales_end_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    event = db.relationship("Event", back_populates="ticket_types")
    order_items = db.relationship("OrderItem", back_populates="ticket_type", lazy=True)

    @property
    def available(self) -> int:
        return self.quantity - self.sold

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "currency": self.currency,
            "quantity": self.quantity,
            "sold": self.sold,
            "available": self.available,
            "min_per_order": self.min_per_order,
            "max_per_order": self.max_per_order,
            "sales_start_at": to_utc_z(self.sales_start_at),
            "sales_end_at": to_utc_z(self.sales_end_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
