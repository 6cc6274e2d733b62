"""
Cardflow Core
Account & user directory models.

Models:
    - Account: the tenant. Issues sequential card numbers.
    - User: account member, or the account's distinguished system actor.

Users are owned by the identity collaborator; the core only reads them and
keeps the notification-bundling preferences it consumes.
"""

from cardflow.models import db, isoformat, utcnow
from cardflow.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

USER_ROLES = {"member", "system"}
DEFAULT_BUNDLE_PERIOD_SECONDS = 30 * 60


class Account(db.Model):
    __tablename__ = "accounts"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    cards_count = db.Column(db.Integer, nullable=False, default=0,
                            comment="Last issued card number")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    users = db.relationship("User", back_populates="account", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "cards_count": self.cards_count,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Account {self.id}: {self.name}>"


class User(TenantModel):
    __tablename__ = "users"
    __table_args__ = (
        db.CheckConstraint("role IN ('member', 'system')", name="ck_users_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="member")

    # Email bundling preferences
    bundle_email_enabled = db.Column(db.Boolean, nullable=False, default=True)
    bundle_period_seconds = db.Column(db.Integer, nullable=False,
                                      default=DEFAULT_BUNDLE_PERIOD_SECONDS)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    account = db.relationship("Account", back_populates="users")

    @property
    def is_system(self) -> bool:
        return self.role == "system"

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "bundle_email_enabled": self.bundle_email_enabled,
            "bundle_period_seconds": self.bundle_period_seconds,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.name}>"
