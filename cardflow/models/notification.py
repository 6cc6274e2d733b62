"""
Cardflow Core
Notification domain models.

Models:
    - Notification: in-app notification record with read tracking
    - NotificationBundle: per-recipient email digest window [starts_at, ends_at)
"""

from cardflow.models import as_utc, db, isoformat, utcnow
from cardflow.models.base import TenantModel
from cardflow.models.subject import NOTIFICATION_SOURCE_KINDS, SubjectRef, kind_check


# ── Constants ────────────────────────────────────────────────────────────────

BUNDLE_STATUSES = ("pending", "processing", "delivered")


class Notification(TenantModel):
    """
    In-app notification entity.

    One record per recipient per source; the unique constraint makes
    re-delivered fan-out a no-op.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        kind_check("source_type", NOTIFICATION_SOURCE_KINDS, "ck_notifications_source_type"),
        db.UniqueConstraint("user_id", "source_type", "source_id",
                            name="uq_notifications_user_source"),
        db.Index("idx_notifications_user_read", "user_id", "read_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=False, index=True, comment="Recipient")
    creator_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                           nullable=True, comment="Originating actor")
    source_type = db.Column(db.String(20), nullable=False)
    source_id = db.Column(db.Integer, nullable=False)

    # Read tracking
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow,
                           index=True)

    @property
    def source(self) -> SubjectRef:
        return SubjectRef(self.source_type, self.source_id)

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def mark_read(self, now=None):
        if self.read_at is None:
            self.read_at = now or utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "user_id": self.user_id,
            "creator_id": self.creator_id,
            "source": self.source.to_dict(),
            "is_read": self.is_read,
            "read_at": isoformat(self.read_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id} user={self.user_id} {self.source_type}:{self.source_id}>"


class NotificationBundle(TenantModel):
    """
    Email digest window for one recipient.

    Windows for the same recipient never overlap: the bundler either reuses
    the latest open window or starts a new one at ``now``, which is never
    earlier than the previous window's end.
    """

    __tablename__ = "notification_bundles"
    __table_args__ = (
        db.CheckConstraint("status IN ('pending', 'processing', 'delivered')",
                           name="ck_notification_bundles_status"),
        db.CheckConstraint("ends_at > starts_at", name="ck_notification_bundles_window"),
        db.Index("idx_notification_bundles_user_ends", "user_id", "ends_at"),
        db.Index("idx_notification_bundles_status_ends", "status", "ends_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=False)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=False)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    user = db.relationship("User")

    def covers(self, moment) -> bool:
        return as_utc(self.starts_at) <= as_utc(moment) < as_utc(self.ends_at)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "starts_at": isoformat(self.starts_at),
            "ends_at": isoformat(self.ends_at),
            "status": self.status,
            "delivered_at": isoformat(self.delivered_at),
        }

    def __repr__(self):
        return f"<NotificationBundle {self.id} user={self.user_id} [{self.status}]>"
