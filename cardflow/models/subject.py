"""
Tagged references to the subject of an event, notification or mention.

A reference is always one of a closed set of kinds. Each table that stores
one keeps the pair in ``<prefix>_type`` / ``<prefix>_id`` columns guarded by a
CHECK constraint listing the kinds that table accepts.
"""

from __future__ import annotations

from dataclasses import dataclass

from cardflow.models import db

SUBJECT_KINDS = ("card", "comment", "event", "mention")

EVENT_SUBJECT_KINDS = ("card", "comment")
NOTIFICATION_SOURCE_KINDS = ("event", "mention")
MENTION_SOURCE_KINDS = ("card", "comment")


@dataclass(frozen=True)
class SubjectRef:
    """One member of the subject union: ``kind`` plus primary key."""

    kind: str
    id: int

    def __post_init__(self):
        if self.kind not in SUBJECT_KINDS:
            raise ValueError(f"Unknown subject kind: {self.kind!r}")
        if self.id is None:
            raise ValueError(f"{self.kind} reference requires an id")

    @classmethod
    def card(cls, card_id: int) -> SubjectRef:
        return cls("card", card_id)

    @classmethod
    def comment(cls, comment_id: int) -> SubjectRef:
        return cls("comment", comment_id)

    @classmethod
    def event(cls, event_id: int) -> SubjectRef:
        return cls("event", event_id)

    @classmethod
    def mention(cls, mention_id: int) -> SubjectRef:
        return cls("mention", mention_id)

    def to_dict(self) -> dict:
        return {"type": self.kind, "id": self.id}


def kind_check(column: str, kinds: tuple[str, ...], name: str) -> db.CheckConstraint:
    """CHECK constraint restricting ``column`` to the given subject kinds."""
    allowed = ", ".join(f"'{k}'" for k in kinds)
    return db.CheckConstraint(f"{column} IN ({allowed})", name=name)
