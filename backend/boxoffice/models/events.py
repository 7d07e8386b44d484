from __future__ import annotations

from ..extensions import db
from boxoffice.time_utils import to_utc_z


EVENT_DRAFT = "draft"
EVENT_PENDING = "pending"
EVENT_APPROVED = "approved"
EVENT_REJECTED = "rejected"
EVENT_CANCELLED = "cancelled"


class Event(db.Model):
    """
    Event as seen by the ticketing core.

    Content management (descriptions, media, schedules) is owned elsewhere;
    the core only reads approval status, date and organizer.
    """
    __tablename__ = "events"
    __table_args__ = (
        db.CheckConstraint(
            "approval_status IN ('draft', 'pending', 'approved', 'rejected', 'cancelled')",
            name="ck_events_approval_status",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    organizer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    event_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    approval_status = db.Column(db.String(16), nullable=False, default=EVENT_DRAFT, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organizer = db.relationship("User", back_populates="organized_events")
    ticket_types = db.relationship("TicketType", back_populates="event", lazy=True)
    promotions = db.relationship("Promotion", back_populates="event", lazy=True)
    orders = db.relationship("Order", back_populates="event", lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizer_id": self.organizer_id,
            "title": self.title,
            "event_date": to_utc_z(self.event_date),
            "approval_status": self.approval_status,
            "created_at": to_utc_z(self.created_at),
        }
