"""
Cardflow Core
Collaboration models: comments and mentions.

Comment bodies live in the rich-text collaborator; the core keeps only an
opaque reference to the stored blob.
"""

from cardflow.models import db, isoformat, utcnow
from cardflow.models.base import TenantModel
from cardflow.models.subject import MENTION_SOURCE_KINDS, SubjectRef, kind_check


class Comment(TenantModel):
    __tablename__ = "comments"

    id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(db.Integer, db.ForeignKey("cards.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    creator_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                           nullable=True, index=True)
    body_ref = db.Column(db.String(255), nullable=True,
                         comment="Opaque reference to the stored rich-text body")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, index=True)

    card = db.relationship("Card")

    def to_dict(self):
        return {
            "id": self.id,
            "card_id": self.card_id,
            "creator_id": self.creator_id,
            "body_ref": self.body_ref,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Comment {self.id} on card {self.card_id}>"


class Mention(TenantModel):
    __tablename__ = "mentions"
    __table_args__ = (
        kind_check("source_type", MENTION_SOURCE_KINDS, "ck_mentions_source_type"),
        db.UniqueConstraint("source_type", "source_id", "mentionee_id",
                            name="uq_mentions_source_mentionee"),
    )

    id = db.Column(db.Integer, primary_key=True)
    source_type = db.Column(db.String(20), nullable=False)
    source_id = db.Column(db.Integer, nullable=False)
    mentioner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                             nullable=True)
    mentionee_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                             nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    @property
    def source(self) -> SubjectRef:
        return SubjectRef(self.source_type, self.source_id)

    @property
    def is_self_mention(self) -> bool:
        return self.mentioner_id == self.mentionee_id

    def to_dict(self):
        return {
            "id": self.id,
            "source": self.source.to_dict(),
            "mentioner_id": self.mentioner_id,
            "mentionee_id": self.mentionee_id,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Mention {self.source_type}:{self.source_id} -> {self.mentionee_id}>"
