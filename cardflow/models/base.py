"""
TenantModel: abstract base class for account-scoped models.

Every table the core owns carries the account (tenant) identifier. Models
inherit from TenantModel instead of db.Model directly. This adds:
  - account_id FK column with index
  - query_for_account(account_id) classmethod
"""

from sqlalchemy.orm import declared_attr

from cardflow.models import db


class TenantModel(db.Model):
    """Abstract base for account-scoped tables."""
    __abstract__ = True

    @declared_attr
    def account_id(cls):
        return db.Column(
            db.Integer,
            db.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )

    @classmethod
    def query_for_account(cls, account_id):
        """Return a query filtered by account_id."""
        return cls.query.filter_by(account_id=account_id)
