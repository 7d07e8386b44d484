from __future__ import annotations

from ..extensions import db
from boxoffice.time_utils import to_utc_z


DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"

VALID_DISCOUNT_TYPES = (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED)


class Promotion(db.Model):
    """
    Event discount codes.

    discount_value is basis points for PERCENTAGE (1000 = 10%) and cents
    for FIXED. `used` only moves inside promotion_service, in the same
    transaction as the order it affects.
    """
    __tablename__ = "promotions"
    __table_args__ = (
        db.CheckConstraint("used >= 0", name="ck_promotions_used_non_negative"),
        db.CheckConstraint("max_uses IS NULL OR used <= max_uses", name="ck_promotions_used_within_max"),
        db.CheckConstraint("discount_value >= 0", name="ck_promotions_discount_non_negative"),
        db.CheckConstraint(
            "discount_type IN ('percentage', 'fixed')", name="ck_promotions_discount_type"
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=False, unique=True, index=True)
    description = db.Column(db.String(255), nullable=True)

    discount_type = db.Column(db.String(16), nullable=False)
    discount_value = db.Column(db.Integer, nullable=False)

    max_uses = db.Column(db.Integer, nullable=True)
    used = db.Column(db.Integer, nullable=False, default=0)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    event = db.relationship("Event", back_populates="promotions")
    orders = db.relationship("Order", back_populates="promotion", lazy=True)

    def to_dict(self):
        return {
            "id": self.id,
            "event_id": self.event_id,
            "code": self.code,
            "description": self.description,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "max_uses": self.max_uses,
            "used": self.used,
            "remaining_uses": None if self.max_uses is None else self.max_uses - self.used,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
