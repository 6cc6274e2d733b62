"""
Cardflow Core
Event domain model.

Models:
    - Event: immutable, append-only audit record of one card or comment action.

Events are written only through ``cardflow.services.event_log.append_event``
and are never updated or deleted through the ORM afterwards.
"""

from sqlalchemy import event as _sa_event

from cardflow.models import db, isoformat, utcnow
from cardflow.models.base import TenantModel
from cardflow.models.subject import EVENT_SUBJECT_KINDS, SubjectRef, kind_check


# ── Constants ────────────────────────────────────────────────────────────────

EVENT_ACTIONS = (
    # Card lifecycle
    "card_published",
    "card_triaged",
    "card_sent_back_to_triage",
    "card_closed",
    "card_reopened",
    "card_postponed",
    "card_auto_postponed",
    "card_resumed",
    "card_board_changed",
    "card_title_changed",
    "card_assigned",
    "card_unassigned",
    "card_due_date_changed",
    # Collaboration
    "comment_created",
)


class Event(TenantModel):
    """
    Immutable audit record.

    ``particulars`` carries action-specific metadata (column name, old/new
    title, full assignee id set, ...).
    """

    __tablename__ = "events"
    __table_args__ = (
        kind_check("subject_type", EVENT_SUBJECT_KINDS, "ck_events_subject_type"),
        db.Index("idx_events_subject", "subject_type", "subject_id"),
        db.Index("idx_events_board_action", "board_id", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    board_id = db.Column(db.Integer, db.ForeignKey("boards.id", ondelete="CASCADE"),
                         nullable=False)
    creator_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                           nullable=True, index=True, comment="Acting user")
    action = db.Column(db.String(60), nullable=False)
    subject_type = db.Column(db.String(20), nullable=False)
    subject_id = db.Column(db.Integer, nullable=False)
    particulars = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow,
                           index=True)

    creator = db.relationship("User")
    board = db.relationship("Board")

    @property
    def subject(self) -> SubjectRef:
        return SubjectRef(self.subject_type, self.subject_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "board_id": self.board_id,
            "creator_id": self.creator_id,
            "action": self.action,
            "subject": self.subject.to_dict(),
            "particulars": self.particulars or {},
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Event {self.id}: {self.action} on {self.subject_type}/{self.subject_id}>"


@_sa_event.listens_for(Event, "before_update")
def _block_event_update(mapper, connection, target) -> None:  # noqa: ANN001
    """Events are append-only."""
    raise RuntimeError(f"Event {target.id} is immutable and cannot be updated")


@_sa_event.listens_for(Event, "before_delete")
def _block_event_delete(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError(f"Event {target.id} is immutable and cannot be deleted")
