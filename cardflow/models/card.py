"""
Cardflow Core
Card domain models.

Models:
    - Card: the tracked work item
    - Closure / NotNow / Goldness / ActivitySpike: single-valued card markers
    - Assignment: card ↔ assignee link (at most ASSIGNMENT_LIMIT per card)
    - Watch: per-user card subscription

Markers are owned by the card and only created or destroyed by the
lifecycle service. Each marker table is unique on card_id, so a card never
carries two of the same kind.
"""

from cardflow.models import db, isoformat, utcnow
from cardflow.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

CARD_STATUSES = {"drafted", "published"}
CARD_STATES = ("drafted", "awaiting_triage", "triaged", "not_now", "closed")
ASSIGNMENT_LIMIT = 100


class Card(TenantModel):
    __tablename__ = "cards"
    __table_args__ = (
        db.UniqueConstraint("account_id", "number", name="uq_cards_account_number"),
        db.CheckConstraint("status IN ('drafted', 'published')", name="ck_cards_status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    board_id = db.Column(db.Integer, db.ForeignKey("boards.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    column_id = db.Column(db.Integer, db.ForeignKey("board_columns.id", ondelete="SET NULL"),
                          nullable=True, index=True,
                          comment="NULL means the card is awaiting triage")
    creator_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                           nullable=True)
    number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(500), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="drafted")
    due_on = db.Column(db.Date, nullable=True)
    last_active_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    board = db.relationship("Board")
    column = db.relationship("BoardColumn")
    creator = db.relationship("User", foreign_keys=[creator_id])

    closure = db.relationship("Closure", uselist=False, cascade="all, delete-orphan",
                              back_populates="card")
    not_now = db.relationship("NotNow", uselist=False, cascade="all, delete-orphan",
                              back_populates="card")
    goldness = db.relationship("Goldness", uselist=False, cascade="all, delete-orphan",
                               back_populates="card")
    activity_spike = db.relationship("ActivitySpike", uselist=False,
                                     cascade="all, delete-orphan", back_populates="card")
    assignments = db.relationship("Assignment", cascade="all, delete-orphan",
                                  back_populates="card", order_by="Assignment.assignee_id")
    watches = db.relationship("Watch", cascade="all, delete-orphan", back_populates="card")

    # ── Derived state ────────────────────────────────────────────────────

    @property
    def is_drafted(self) -> bool:
        return self.status == "drafted"

    @property
    def is_published(self) -> bool:
        return self.status == "published"

    @property
    def is_closed(self) -> bool:
        return self.closure is not None

    @property
    def is_postponed(self) -> bool:
        return self.not_now is not None

    @property
    def is_open(self) -> bool:
        """Published, not closed and not postponed."""
        return self.is_published and not self.is_closed and not self.is_postponed

    @property
    def is_golden(self) -> bool:
        return self.goldness is not None

    @property
    def state(self) -> str:
        if self.is_drafted:
            return "drafted"
        if self.is_closed:
            return "closed"
        if self.is_postponed:
            return "not_now"
        if self.column_id is None:
            return "awaiting_triage"
        return "triaged"

    @property
    def assignee_ids(self) -> list[int]:
        return sorted(a.assignee_id for a in self.assignments)

    def to_dict(self, include_markers=True):
        d = {
            "id": self.id,
            "account_id": self.account_id,
            "board_id": self.board_id,
            "column_id": self.column_id,
            "creator_id": self.creator_id,
            "number": self.number,
            "title": self.title,
            "status": self.status,
            "state": self.state,
            "due_on": self.due_on.isoformat() if self.due_on else None,
            "last_active_at": isoformat(self.last_active_at),
            "created_at": isoformat(self.created_at),
        }
        if include_markers:
            d["closure"] = self.closure.to_dict() if self.closure else None
            d["not_now"] = self.not_now.to_dict() if self.not_now else None
            d["golden"] = self.is_golden
            d["activity_spike_at"] = (
                isoformat(self.activity_spike.updated_at) if self.activity_spike else None
            )
            d["assignee_ids"] = self.assignee_ids
        return d

    def __repr__(self):
        return f"<Card #{self.number} [{self.state}] {self.title[:40]}>"


class Closure(TenantModel):
    __tablename__ = "closures"

    id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(db.Integer, db.ForeignKey("cards.id", ondelete="CASCADE"),
                        nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                        nullable=True, comment="Closer")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    card = db.relationship("Card", back_populates="closure")

    def to_dict(self):
        return {"user_id": self.user_id, "created_at": isoformat(self.created_at)}


class NotNow(TenantModel):
    """Postponement marker."""

    __tablename__ = "card_not_nows"

    id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(db.Integer, db.ForeignKey("cards.id", ondelete="CASCADE"),
                        nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                        nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    card = db.relationship("Card", back_populates="not_now")

    def to_dict(self):
        return {"user_id": self.user_id, "created_at": isoformat(self.created_at)}


class Goldness(TenantModel):
    __tablename__ = "card_goldnesses"

    id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(db.Integer, db.ForeignKey("cards.id", ondelete="CASCADE"),
                        nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    card = db.relationship("Card", back_populates="goldness")


class ActivitySpike(TenantModel):
    __tablename__ = "card_activity_spikes"

    id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(db.Integer, db.ForeignKey("cards.id", ondelete="CASCADE"),
                        nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    card = db.relationship("Card", back_populates="activity_spike")

    def touch(self, now):
        self.updated_at = now


class Assignment(TenantModel):
    __tablename__ = "assignments"
    __table_args__ = (
        db.UniqueConstraint("card_id", "assignee_id", name="uq_assignments_card_assignee"),
    )

    id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(db.Integer, db.ForeignKey("cards.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    assignee_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    assigner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                            nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    card = db.relationship("Card", back_populates="assignments")

    def __repr__(self):
        return f"<Assignment card={self.card_id} assignee={self.assignee_id}>"


class Watch(TenantModel):
    __tablename__ = "watches"
    __table_args__ = (
        db.UniqueConstraint("card_id", "user_id", name="uq_watches_card_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(db.Integer, db.ForeignKey("cards.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    watching = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    card = db.relationship("Card", back_populates="watches")

    def __repr__(self):
        return f"<Watch card={self.card_id} user={self.user_id} watching={self.watching}>"
