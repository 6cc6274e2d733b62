"""
Cardflow Core
Comment & mention service.

Comment bodies are stored by the rich-text collaborator; a comment here
carries only ``body_ref``. Creating a comment touches the card, makes the
commenter a watcher, records any mentions and appends ``comment_created``
in one transaction. Mentions fan out through their own notification task.
"""

import logging
from datetime import datetime

from sqlalchemy import select

from cardflow.core.exceptions import InvalidTransition
from cardflow.models import db
from cardflow.models.collaboration import Comment, Mention
from cardflow.models.subject import MENTION_SOURCE_KINDS, SubjectRef
from cardflow.services import directory
from cardflow.services.card_lifecycle import card_transaction, detect_comment_spike, get_card
from cardflow.services.task_queue import task_queue

logger = logging.getLogger(__name__)


def create_comment(account_id: int, card_id: int, creator_id: int, body_ref: str | None = None,
                   *, mentionee_ids=(), now: datetime | None = None) -> Comment:
    """Add a comment to a published card and announce it."""
    directory.get_user(account_id, creator_id)
    mentions = []
    with card_transaction(account_id, card_id, creator_id, now) as tx:
        card = tx.card
        if card.is_drafted:
            raise InvalidTransition(card.id, "comment", card.state, "drafted cards take no comments")

        comment = Comment(account_id=account_id, card_id=card.id, creator_id=creator_id,
                          body_ref=body_ref, created_at=tx.now)
        db.session.add(comment)
        db.session.flush()

        directory.watch_card(card, creator_id)
        mentions = create_mentions(account_id, SubjectRef.comment(comment.id), creator_id,
                                   mentionee_ids, now=tx.now)
        detect_comment_spike(card, tx.now)
        tx.record("comment_created", {"card_id": card.id}, subject=SubjectRef.comment(comment.id))

    for mention in mentions:
        task_queue.enqueue("route_mention_notification", mention.id)

    logger.info("Comment %s created on card %s", comment.id, card_id,
                extra={"account_id": account_id, "card_id": card_id})
    return comment


def create_mentions(account_id: int, source: SubjectRef, mentioner_id: int, mentionee_ids,
                    *, now: datetime | None = None) -> list[Mention]:
    """Record mentions found in a card description or comment. Flushes only."""
    if source.kind not in MENTION_SOURCE_KINDS:
        raise ValueError(f"Mentions cannot come from a {source.kind!r}")

    mentions = []
    for mentionee_id in sorted(set(mentionee_ids or ())):
        mentionee = directory.get_user(account_id, mentionee_id)
        mention = Mention(account_id=account_id, source_type=source.kind, source_id=source.id,
                          mentioner_id=mentioner_id, mentionee_id=mentionee.id)
        if now is not None:
            mention.created_at = now
        db.session.add(mention)
        mentions.append(mention)
    db.session.flush()
    return mentions


def mention_in_card(account_id: int, card_id: int, mentioner_id: int, mentionee_ids) -> list[Mention]:
    """Record mentions made in a card's description and route them."""
    directory.get_user(account_id, mentioner_id)
    card = get_card(account_id, card_id)
    mentions = create_mentions(account_id, SubjectRef.card(card.id), mentioner_id, mentionee_ids)
    db.session.commit()
    for mention in mentions:
        task_queue.enqueue("route_mention_notification", mention.id)
    return mentions


def mentionee_ids_for(source: SubjectRef) -> set[int]:
    rows = db.session.execute(
        select(Mention.mentionee_id).where(Mention.source_type == source.kind,
                                           Mention.source_id == source.id)
    ).scalars()
    return set(rows)