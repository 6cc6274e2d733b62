"""Outbound webhook models: subscriptions, delivery records and delinquency trackers."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.orm import relationship

from cardflow.models import db, isoformat, utcnow
from cardflow.models.base import TenantModel


DELIVERY_STATES = ("pending", "in_progress", "completed", "errored")


# ── Webhook Subscription ─────────────────────────────────────────

class Webhook(TenantModel):
    """Board-scoped outbound webhook."""

    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True)
    board_id = Column(Integer, ForeignKey("boards.id", ondelete="CASCADE"),
                      nullable=False, index=True)
    name = Column(String(100), default="")
    url = Column(String(2048), nullable=False)
    signing_secret = Column(String(100), nullable=False)  # HMAC signing secret
    subscribed_actions = Column(JSON, default=list)  # ["card_published", ...]
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    deliveries = relationship(
        "WebhookDelivery",
        back_populates="webhook",
        cascade="all, delete-orphan",
        lazy="dynamic",
    )
    delinquency_tracker = relationship(
        "WebhookDelinquencyTracker",
        back_populates="webhook",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def subscribes_to(self, action: str) -> bool:
        return action in (self.subscribed_actions or [])

    def to_dict(self, include_secret=False):
        d = {
            "id": self.id,
            "account_id": self.account_id,
            "board_id": self.board_id,
            "name": self.name,
            "url": self.url,
            "subscribed_actions": self.subscribed_actions or [],
            "active": self.active,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if include_secret:
            d["signing_secret"] = self.signing_secret
        return d

    def __repr__(self):
        return f"<Webhook {self.id}: {self.url} active={self.active}>"


# ── Delivery ─────────────────────────────────────────────────────

class WebhookDelivery(TenantModel):
    """One delivery attempt of one event to one webhook."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("webhook_id", "event_id", name="uq_webhook_deliveries_webhook_event"),
        db.CheckConstraint(
            "state IN ('pending', 'in_progress', 'completed', 'errored')",
            name="ck_webhook_deliveries_state",
        ),
    )

    id = Column(Integer, primary_key=True)
    webhook_id = Column(Integer, ForeignKey("webhooks.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"),
                      nullable=False, index=True)
    state = Column(String(20), nullable=False, default="pending")
    request = Column(JSON, default=dict)  # {"url", "headers", "body"}
    response = Column(JSON, default=dict)  # {"status_code", "headers", "body", "truncated"}
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    webhook = relationship("Webhook", back_populates="deliveries")

    @property
    def succeeded(self) -> bool:
        return self.state == "completed"

    def to_dict(self):
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "event_id": self.event_id,
            "state": self.state,
            "request": self.request or {},
            "response": self.response or {},
            "error": self.error,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


# ── Delinquency ──────────────────────────────────────────────────

class WebhookDelinquencyTracker(TenantModel):
    """Consecutive failure streak for one webhook."""

    __tablename__ = "webhook_delinquency_trackers"

    id = Column(Integer, primary_key=True)
    webhook_id = Column(Integer, ForeignKey("webhooks.id", ondelete="CASCADE"),
                        nullable=False, unique=True)
    consecutive_failures_count = Column(Integer, nullable=False, default=0)
    first_failure_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    webhook = relationship("Webhook", back_populates="delinquency_tracker")

    def reset(self):
        self.consecutive_failures_count = 0
        self.first_failure_at = None

    def to_dict(self):
        return {
            "webhook_id": self.webhook_id,
            "consecutive_failures_count": self.consecutive_failures_count,
            "first_failure_at": isoformat(self.first_failure_at),
        }
