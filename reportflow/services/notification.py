"""
Report review notification channel.

Persists engine-produced notification intents as ``ReportNotification``
rows and serves read tracking for recipients. Delivery beyond the in-app
record is out of this service's hands.
"""

from datetime import datetime, timezone

from reportflow.core.exceptions import NotFoundError
from reportflow.models import db
from reportflow.models.notification import ReportNotification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def emit(intent):
        """
        Persist one notification intent.

        Args:
            intent: ``NotificationIntent`` from the workflow engine.

        Returns:
            The created ReportNotification instance (already committed).
        """
        notif = ReportNotification(
            recipient_id=intent.recipient_id,
            report_id=intent.report_id,
            step_id=intent.step_id,
            kind=intent.kind,
            message=intent.message,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, report_id=None, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = ReportNotification.query.filter_by(recipient_id=recipient_id)
        if report_id:
            q = q.filter_by(report_id=report_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(ReportNotification.created_at.desc(), ReportNotification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        """Return count of unread notifications."""
        return ReportNotification.query.filter_by(recipient_id=recipient_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark a single notification as read. Other users' rows are not found."""
        notif = db.session.get(ReportNotification, notification_id)
        if notif is None or notif.recipient_id != recipient_id:
            raise NotFoundError("ReportNotification", notification_id)
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id):
        """Mark all notifications for a recipient as read."""
        q = ReportNotification.query.filter_by(recipient_id=recipient_id, is_read=False)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count

    @staticmethod
    def clear_for_recipient(recipient_id):
        """Delete every notification of a recipient."""
        count = ReportNotification.query.filter_by(recipient_id=recipient_id).delete(
            synchronize_session="fetch",
        )
        db.session.commit()
        return count
