"""
Cardflow Core
Notification Bundler.

Collects a recipient's unread notifications into non-overlapping windows
``[starts_at, ends_at)`` and emails one digest per window.

    ensure_window(user_id)  reuse the latest window while it is still open,
                            else start a new one at ``now``. Serialized per
                            recipient, so windows never overlap.
    deliver_due()           periodic job. Claims each due bundle with a
                            compare-and-swap ``pending → processing`` before
                            any email is sent (at-most-once), then marks it
                            ``delivered``.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy import select, update

from cardflow.models import as_utc, db, isoformat, utcnow
from cardflow.models.account import User
from cardflow.models.card import Card
from cardflow.models.collaboration import Comment, Mention
from cardflow.models.event import Event
from cardflow.models.notification import Notification, NotificationBundle
from cardflow.services.email_service import EmailService
from cardflow.services.helpers.locks import entity_lock

logger = logging.getLogger(__name__)

BUNDLE_TEMPLATE = "notification_bundle"


# ── Windows ──────────────────────────────────────────────────────────────────

def ensure_window(user_id: int, *, now: datetime | None = None) -> NotificationBundle:
    """Return the recipient's open bundle, creating one if needed."""
    now = now or utcnow()
    with entity_lock("user", user_id):
        try:
            user = db.session.execute(
                select(User)
                .where(User.id == user_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()

            latest = latest_bundle(user.id)
            if latest is not None and as_utc(latest.ends_at) > now:
                bundle = latest
            else:
                bundle = NotificationBundle(
                    account_id=user.account_id,
                    user_id=user.id,
                    starts_at=now,
                    ends_at=now + timedelta(seconds=user.bundle_period_seconds),
                    status="pending",
                )
                db.session.add(bundle)
                logger.debug("Bundle window opened for user %s", user.id,
                             extra={"account_id": user.account_id})
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    return bundle


def latest_bundle(user_id: int) -> NotificationBundle | None:
    return db.session.execute(
        select(NotificationBundle)
        .where(NotificationBundle.user_id == user_id)
        .order_by(NotificationBundle.ends_at.desc(), NotificationBundle.id.desc())
        .limit(1)
    ).scalar_one_or_none()


# ── Delivery ─────────────────────────────────────────────────────────────────

def deliver_due(now: datetime | None = None) -> dict:
    """Deliver every pending bundle whose window has ended. Returns a summary."""
    now = now or utcnow()
    due_ids = db.session.execute(
        select(NotificationBundle.id)
        .where(NotificationBundle.status == "pending", NotificationBundle.ends_at <= now)
        .order_by(NotificationBundle.ends_at, NotificationBundle.id)
    ).scalars().all()

    outcomes = Counter()
    for bundle_id in due_ids:
        try:
            outcomes[deliver_bundle(bundle_id, now=now)] += 1
        except Exception:
            db.session.rollback()
            outcomes["failed"] += 1
            logger.exception("Bundle %s delivery failed", bundle_id,
                             extra={"bundle_id": bundle_id})

    summary = {
        "due": len(due_ids),
        "sent": outcomes["sent"],
        "delivered_without_email": outcomes["empty"],
        "skipped": outcomes["skipped"],
        "email_failed": outcomes["email_failed"],
        "failed": outcomes["failed"],
    }
    if due_ids:
        logger.info("Bundle delivery: %s", summary)
    return summary


def deliver_bundle(bundle_id: int, *, now: datetime | None = None) -> str:
    """
    Deliver one bundle.

    Returns ``"skipped"`` when another worker claimed it first, ``"empty"``
    when nothing had to be sent, ``"sent"`` after a digest email went out
    and ``"email_failed"`` when the send failed. A claimed bundle always
    ends ``delivered``.
    """
    now = now or utcnow()
    claimed = db.session.execute(
        update(NotificationBundle)
        .where(NotificationBundle.id == bundle_id, NotificationBundle.status == "pending")
        .values(status="processing")
        .execution_options(synchronize_session=False)
    ).rowcount
    db.session.commit()
    if claimed == 0:
        return "skipped"

    bundle = db.session.get(NotificationBundle, bundle_id)
    user = bundle.user
    notifications = unread_in_window(bundle)

    outcome = "empty"
    if notifications and user.bundle_email_enabled and user.email:
        log = EmailService.send_from_template(
            to_email=user.email,
            to_name=user.name,
            template_name=BUNDLE_TEMPLATE,
            context={
                "name": user.name,
                "count": len(notifications),
                "since": isoformat(bundle.starts_at),
                "until": isoformat(bundle.ends_at),
                "notification_list": EmailService.render_list_items(
                    summarize(n) for n in notifications
                ),
            },
            account_id=bundle.account_id,
            bundle_id=bundle.id,
        )
        outcome = "sent" if log is not None and log.status == "sent" else "email_failed"

    bundle.status = "delivered"
    bundle.delivered_at = now
    db.session.commit()
    return outcome


def unread_in_window(bundle: NotificationBundle) -> list[Notification]:
    return list(db.session.execute(
        select(Notification)
        .where(
            Notification.user_id == bundle.user_id,
            Notification.read_at.is_(None),
            Notification.created_at >= bundle.starts_at,
            Notification.created_at < bundle.ends_at,
        )
        .order_by(Notification.created_at, Notification.id)
    ).scalars())


# ── Digest lines ─────────────────────────────────────────────────────────────

_ACTION_PHRASES = {
    "card_published": "added",
    "card_triaged": "triaged",
    "card_sent_back_to_triage": "sent back",
    "card_closed": "closed",
    "card_reopened": "reopened",
    "card_postponed": "postponed",
    "card_auto_postponed": "was auto-postponed",
    "card_resumed": "resumed",
    "card_board_changed": "moved",
    "card_title_changed": "renamed",
    "card_assigned": "assigned",
    "card_unassigned": "unassigned",
    "card_due_date_changed": "changed the due date of",
    "comment_created": "commented on",
}


def summarize(notification: Notification) -> str:
    """One plain-text digest line for a notification."""
    creator = db.session.get(User, notification.creator_id) if notification.creator_id else None
    who = creator.name if creator else "Someone"

    if notification.source_type == "mention":
        mention = db.session.get(Mention, notification.source_id)
        card = _card_for(mention.source_type, mention.source_id) if mention else None
        return f"{who} mentioned you on {_label(card)}"

    event = db.session.get(Event, notification.source_id)
    if event is None:
        return f"{who} updated a card"
    label = _label(_card_for(event.subject_type, event.subject_id))
    phrase = _ACTION_PHRASES.get(event.action, event.action)
    if event.action == "card_auto_postponed":
        return f"{label} {phrase}"
    return f"{who} {phrase} {label}"


def _card_for(kind: str, subject_id: int) -> Card | None:
    if kind == "card":
        return db.session.get(Card, subject_id)
    comment = db.session.get(Comment, subject_id)
    return comment.card if comment else None


def _label(card: Card | None) -> str:
    return f"#{card.number} {card.title}" if card else "a card"
