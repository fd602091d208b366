"""
GRC Risk Workflow Service
Notification Service.

Central service for creating and querying in-app notifications. The risk
workflow engine uses it as its notification sink: events are emitted after
the transition has committed, and a failing notification never undoes or
fails the transition.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from app.models import db
from app.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient, title, message="", notification_type="system",
               severity="info", entity_type="risk", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient=recipient,
            notification_type=notification_type,
            title=title,
            message=message,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def emit(event):
        """
        Fire-and-forget delivery of a workflow ``NotificationEvent``.

        Returns the Notification, or None when delivery failed.
        """
        try:
            return NotificationService.create(
                recipient=event.recipient,
                title=event.title,
                message=event.message,
                notification_type=event.notification_type,
                severity=event.severity,
                entity_type="risk",
                entity_id=event.risk_id,
            )
        except SQLAlchemyError:
            db.session.rollback()
            logger.warning(
                "Notification delivery failed",
                exc_info=True,
                extra={"risk_id": event.risk_id, "event_type": "notification.failed"},
            )
            return None

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = Notification.query.filter_by(recipient=recipient)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient):
        """Return count of unread notifications."""
        return Notification.query.filter_by(recipient=recipient, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif
