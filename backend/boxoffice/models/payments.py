from __future__ import annotations

from ..extensions import db
from boxoffice.time_utils import to_utc_z


PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_REFUNDING = "refunding"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

PROVIDER_CHAPA = "chapa"
PROVIDER_MANUAL = "manual"


class PaymentTransaction(db.Model):
    """
    One payment attempt against an order.

    WHY: Provider callbacks are keyed by (provider, transaction_id). Status
    moves pending -> completed|failed exactly once (compare-and-swap in
    payment_service), and completed -> refunding -> refunded on refund. The
    refunding claim admits one refund caller at a time.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.UniqueConstraint("provider", "transaction_id", name="uq_payment_transactions_provider_txn"),
        db.CheckConstraint(
            "status IN ('pending', 'completed', 'refunding', 'failed', 'refunded')",
            name="ck_payment_transactions_status",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    provider = db.Column(db.String(32), nullable=False)
    transaction_id = db.Column(db.String(64), nullable=False, index=True)
    payment_method = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="ETB")

    checkout_url = db.Column(db.String(1024), nullable=True)
    details = db.Column(db.JSON, nullable=True)

    refund_reference = db.Column(db.String(64), nullable=True)
    refunded_amount_cents = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    order = db.relationship("Order", back_populates="payment_transactions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "provider": self.provider,
            "transaction_id": self.transaction_id,
            "payment_method": self.payment_method,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "checkout_url": self.checkout_url,
            "refund_reference": self.refund_reference,
            "refunded_amount_cents": self.refunded_amount_cents,
            "created_at": to_utc_z(self.created_at),
            "settled_at": to_utc_z(self.settled_at),
            "refunded_at": to_utc_z(self.refunded_at),
        }
