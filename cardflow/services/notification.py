"""
Cardflow Core
Notification Service.

Read-side operations on a recipient's notifications: listing, unread
count and read tracking. Writing notifications is the router's job.
"""

from sqlalchemy import func, select, update

from cardflow.core.exceptions import NotFoundError
from cardflow.models import db, utcnow
from cardflow.models.notification import Notification
from cardflow.services.helpers.scoped_queries import get_scoped


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(account_id, user_id, *, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.

        Returns:
            (items, total)
        """
        base = select(Notification).where(Notification.account_id == account_id,
                                          Notification.user_id == user_id)
        if unread_only:
            base = base.where(Notification.read_at.is_(None))
        total = db.session.execute(
            select(func.count()).select_from(base.subquery())
        ).scalar_one()
        items = db.session.execute(
            base.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def unread_count(account_id, user_id):
        return db.session.execute(
            select(func.count(Notification.id)).where(
                Notification.account_id == account_id,
                Notification.user_id == user_id,
                Notification.read_at.is_(None),
            )
        ).scalar_one()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(account_id, user_id, notification_id):
        """Mark a single notification as read. Only its recipient may do so."""
        notif = get_scoped(Notification, notification_id, account_id=account_id)
        if notif.user_id != user_id:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(account_id, user_id):
        """Mark all notifications for a recipient as read."""
        count = db.session.execute(
            update(Notification)
            .where(
                Notification.account_id == account_id,
                Notification.user_id == user_id,
                Notification.read_at.is_(None),
            )
            .values(read_at=utcnow())
            .execution_options(synchronize_session="fetch")
        ).rowcount
        db.session.commit()
        return count
