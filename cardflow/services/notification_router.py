"""
Cardflow Core
Notification Router.

Turns a committed Event, or a Mention, into per-recipient Notification rows
and makes sure every recipient who bundles email has an open digest window.

Recipient rules (``recipient_ids_for``):

    card_assigned        assignees − actor
    card_published       board watchers ∪ assignees − actor − card mentionees
    comment_created      card watchers − actor − comment mentionees
    other card events    board watchers − actor
    mention              the mentionee, unless they mentioned themselves

System users never receive notifications. Recipients are processed in
ascending id order so concurrent fan-outs take row locks in the same order.
Routing is idempotent: a recipient who already has a notification for the
source is skipped.
"""

import logging
from datetime import datetime

from sqlalchemy import select

from cardflow.models import db, utcnow
from cardflow.models.account import User
from cardflow.models.card import Card
from cardflow.models.collaboration import Comment, Mention
from cardflow.models.event import Event
from cardflow.models.notification import Notification
from cardflow.models.subject import SubjectRef
from cardflow.services import directory, notification_bundler
from cardflow.services.comments import mentionee_ids_for
from cardflow.services.task_queue import register_task

logger = logging.getLogger(__name__)


# ── Recipient computation ────────────────────────────────────────────────────

def recipient_ids_for(
    action: str,
    *,
    actor_id: int | None,
    board_watcher_ids=(),
    card_watcher_ids=(),
    assignee_ids=(),
    mentionee_ids=(),
) -> list[int]:
    """Pure recipient rule for one event. Returns sorted user ids."""
    if action == "card_assigned":
        recipients = set(assignee_ids)
    elif action == "card_published":
        recipients = (set(board_watcher_ids) | set(assignee_ids)) - set(mentionee_ids)
    elif action == "comment_created":
        recipients = set(card_watcher_ids) - set(mentionee_ids)
    else:
        recipients = set(board_watcher_ids)
    recipients.discard(actor_id)
    return sorted(recipients)


def recipients_for_event(event: Event) -> list[int]:
    """Gather the inputs for ``recipient_ids_for`` from the database."""
    particulars = event.particulars or {}
    inputs = {}

    if event.action == "card_assigned":
        inputs["assignee_ids"] = particulars.get("assignee_ids", [])
    elif event.action == "card_published":
        card = db.session.get(Card, event.subject_id)
        inputs["board_watcher_ids"] = directory.board_watcher_ids(event.board_id)
        inputs["assignee_ids"] = card.assignee_ids if card else []
        inputs["mentionee_ids"] = mentionee_ids_for(SubjectRef.card(event.subject_id))
    elif event.action == "comment_created":
        comment = db.session.get(Comment, event.subject_id)
        inputs["card_watcher_ids"] = directory.card_watcher_ids(comment.card_id) if comment else []
        inputs["mentionee_ids"] = mentionee_ids_for(SubjectRef.comment(event.subject_id))
    else:
        inputs["board_watcher_ids"] = directory.board_watcher_ids(event.board_id)

    candidates = recipient_ids_for(event.action, actor_id=event.creator_id, **inputs)
    return _without_system_users(event.account_id, candidates)


def _without_system_users(account_id: int, user_ids: list[int]) -> list[int]:
    if not user_ids:
        return []
    members = set(db.session.execute(
        select(User.id).where(User.id.in_(user_ids), User.account_id == account_id,
                              User.role != "system")
    ).scalars())
    return [user_id for user_id in user_ids if user_id in members]


# ── Persistence ──────────────────────────────────────────────────────────────

def notify(account_id: int, recipient_ids: list[int], source: SubjectRef,
           creator_id: int | None, *, now: datetime | None = None) -> list[Notification]:
    """
    Write one notification per recipient for ``source`` and open bundle
    windows. Returns the notifications created by this call.
    """
    now = now or utcnow()
    ordered = sorted(set(recipient_ids))
    if not ordered:
        return []

    already = set(db.session.execute(
        select(Notification.user_id).where(
            Notification.source_type == source.kind,
            Notification.source_id == source.id,
            Notification.user_id.in_(ordered),
        )
    ).scalars())

    created = []
    for user_id in ordered:
        if user_id in already:
            continue
        notification = Notification(account_id=account_id, user_id=user_id,
                                    creator_id=creator_id, source_type=source.kind,
                                    source_id=source.id, created_at=now)
        db.session.add(notification)
        created.append(notification)
    db.session.commit()

    if created:
        logger.info("%d notification(s) for %s:%s", len(created), source.kind, source.id,
                    extra={"account_id": account_id})

    for notification in created:
        user = db.session.get(User, notification.user_id)
        if user is not None and user.bundle_email_enabled:
            notification_bundler.ensure_window(user.id, now=now)

    return created


# ── Tasks ────────────────────────────────────────────────────────────────────

@register_task("route_event_notifications")
def route_event_notifications(event_id: int, now: datetime | None = None) -> list[Notification]:
    event = db.session.get(Event, event_id)
    if event is None:
        logger.warning("route_event_notifications: event %s not found", event_id)
        return []

    recipients = recipients_for_event(event)
    notifications = notify(event.account_id, recipients, SubjectRef.event(event.id),
                           event.creator_id, now=now)

    # Mentions written while the card was a draft are announced on publish
    if event.action == "card_published":
        card_mentions = db.session.execute(
            select(Mention.id).where(Mention.source_type == "card",
                                     Mention.source_id == event.subject_id)
            .order_by(Mention.mentionee_id)
        ).scalars().all()
        for mention_id in card_mentions:
            route_mention_notification(mention_id, now=now)

    return notifications


@register_task("route_mention_notification")
def route_mention_notification(mention_id: int, now: datetime | None = None) -> list[Notification]:
    mention = db.session.get(Mention, mention_id)
    if mention is None:
        logger.warning("route_mention_notification: mention %s not found", mention_id)
        return []
    if mention.is_self_mention:
        return []

    card = _mentioned_card(mention)
    if card is None or card.is_drafted:
        return []

    recipients = _without_system_users(mention.account_id, [mention.mentionee_id])
    return notify(mention.account_id, recipients, SubjectRef.mention(mention.id),
                  mention.mentioner_id, now=now)


def _mentioned_card(mention: Mention) -> Card | None:
    if mention.source_type == "card":
        return db.session.get(Card, mention.source_id)
    comment = db.session.get(Comment, mention.source_id)
    return comment.card if comment else None
