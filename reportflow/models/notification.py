"""
Report review notification model.

Models:
    - ReportNotification: one persisted notification intent per recipient per event
"""

from datetime import datetime, timezone

from reportflow.models import db


NOTIFICATION_KINDS = {
    "pending_review",
    "approved",
    "rejected",
    "changes_requested",
    "information_requested",
    "delegated",
    "escalated",
    "cancelled",
}


class ReportNotification(db.Model):
    """
    In-app notification entity.

    Delivery (email, push) is someone else's job; this row is the record
    that the user must be told.
    """

    __tablename__ = "report_notifications"
    __table_args__ = (
        db.Index("idx_rn_recipient_read", "recipient_id", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.String(64), nullable=False, index=True)
    report_id = db.Column(db.String(36), nullable=True, index=True)
    step_id = db.Column(db.String(36), nullable=True)
    kind = db.Column(db.String(30), default="pending_review", comment="pending_review | approved | ...")
    message = db.Column(db.Text, default="")

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "report_id": self.report_id,
            "step_id": self.step_id,
            "kind": self.kind,
            "message": self.message,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ReportNotification {self.id}: {self.kind} → {self.recipient_id}>"
