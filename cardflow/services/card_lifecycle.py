"""
Cardflow Core
Card Lifecycle Service.

Implements the card state machine:

    drafted ──publish──► awaiting_triage ◄──send_back_to_triage── triaged
                              │  ▲                                  ▲
                              │  └────────── triage_into ───────────┘
                              ▼
              closed ◄──close── (open) ──postpone──► not_now ──resume──► open

Rules:
    - Every transition mutates state and appends exactly one Event in the
      same transaction; on any error both roll back together.
    - Transitions on one card are serialized (process lock + row lock).
    - Closure and NotNow are mutually exclusive. Postponing a closed card
      drops the Closure silently (no ``card_reopened``).
    - Every transition sets ``last_active_at`` to the transition time; that
      timestamp is the sole input of the entropy sweep.
    - Re-closing a closed card is an idempotent no-op without an event.
    - Goldness is a marker toggle, not a transition: no event.

All functions take the account id and acting user id explicitly and return
the updated Card.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta

from sqlalchemy import func, select

from cardflow.core.exceptions import AssignmentLimitExceeded, InvalidTransition, ValidationError
from cardflow.models import as_utc, db, utcnow
from cardflow.models.account import Account
from cardflow.models.board import BoardColumn
from cardflow.models.card import (
    ASSIGNMENT_LIMIT,
    ActivitySpike,
    Assignment,
    Card,
    Closure,
    Goldness,
    NotNow,
)
from cardflow.models.collaboration import Comment
from cardflow.models.subject import SubjectRef
from cardflow.services import directory
from cardflow.services.event_log import append_event, commit_and_dispatch
from cardflow.services.helpers.locks import entity_lock
from cardflow.services.helpers.scoped_queries import get_scoped, get_scoped_or_none

logger = logging.getLogger(__name__)

ACTIVITY_SPIKE_WINDOW = timedelta(hours=24)
ACTIVITY_SPIKE_MIN_COMMENTERS = 2


# ═════════════════════════════════════════════════════════════════════════════
# Transaction scaffolding
# ═════════════════════════════════════════════════════════════════════════════


class CardTransaction:
    """State handed to the body of ``card_transaction``."""

    def __init__(self, card: Card, actor_id: int | None, now: datetime):
        self.card = card
        self.actor_id = actor_id
        self.now = now
        self.events = []

    def record(self, action: str, particulars: dict | None = None,
               subject: SubjectRef | None = None, *, touch: bool = True):
        """Append the transition's event and bump ``last_active_at``."""
        card = self.card
        if touch:
            card.last_active_at = self.now
        event = append_event(
            account_id=card.account_id,
            board_id=card.board_id,
            creator_id=self.actor_id,
            action=action,
            subject=subject or SubjectRef.card(card.id),
            particulars=particulars,
            created_at=self.now,
        )
        self.events.append(event)
        return event

    def remove_marker(self, name: str) -> None:
        """Delete a single-valued marker (``closure``, ``not_now``, ...) if present."""
        if getattr(self.card, name) is not None:
            setattr(self.card, name, None)
            db.session.flush()

    def reject(self, action: str, reason: str | None = None):
        raise InvalidTransition(self.card.id, action, self.card.state, reason)


@contextmanager
def card_transaction(account_id: int, card_id: int, actor_id: int | None,
                     now: datetime | None = None):
    """
    Serialize on one card, load it row-locked and commit on exit.

    Events recorded through the yielded transaction are fanned out only
    after the commit succeeds. Any exception rolls everything back.
    """
    now = now or utcnow()
    with entity_lock("card", card_id):
        try:
            card = get_scoped(Card, card_id, account_id=account_id, for_update=True)
            tx = CardTransaction(card, actor_id, now)
            yield tx
            commit_and_dispatch(*tx.events)
        except Exception:
            db.session.rollback()
            raise


def _log_transition(card: Card, action: str) -> None:
    logger.info("Card #%s → %s", card.number, action,
                extra={"account_id": card.account_id, "card_id": card.id,
                       "event_action": action})


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_card(account_id: int, card_id: int) -> Card:
    return get_scoped(Card, card_id, account_id=account_id)


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


def create_card(account_id: int, board_id: int, creator_id: int, title: str, *,
                due_on: date | None = None, now: datetime | None = None) -> Card:
    """Create a drafted card with the next per-account number.

    No event: publishing is the first thing the card announces.
    """
    now = now or utcnow()
    title = (title or "").strip()
    if not title:
        raise ValidationError("Card title is required", details={"title": "required"})

    board = directory.get_board(account_id, board_id)
    directory.get_user(account_id, creator_id)

    with entity_lock("account", account_id):
        try:
            account = db.session.execute(
                select(Account)
                .where(Account.id == account_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()
            account.cards_count = (account.cards_count or 0) + 1

            card = Card(
                account_id=account_id,
                board_id=board.id,
                creator_id=creator_id,
                number=account.cards_count,
                title=title,
                status="drafted",
                due_on=due_on,
                last_active_at=now,
                created_at=now,
            )
            db.session.add(card)
            db.session.flush()
            directory.watch_card(card, creator_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info("Card #%s created", card.number,
                extra={"account_id": account_id, "card_id": card.id})
    return card


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle transitions
# ═════════════════════════════════════════════════════════════════════════════


def publish(account_id: int, card_id: int, actor_id: int, *, now=None) -> Card:
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        if not tx.card.is_drafted:
            tx.reject("publish", "only drafted cards can be published")
        tx.card.status = "published"
        tx.record("card_published")
    _log_transition(tx.card, "card_published")
    return tx.card


def triage_into(account_id: int, card_id: int, column_id: int, actor_id: int, *,
                now=None) -> Card:
    """Place an open or postponed card into a column of its board.

    A postponed card is resumed implicitly. Triage into the column the card
    already sits in is a no-op.
    """
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        card = tx.card
        if card.is_drafted or card.is_closed:
            tx.reject("triage_into")

        column = get_scoped_or_none(BoardColumn, column_id, account_id=account_id)
        if column is None or column.board_id != card.board_id:
            raise ValidationError(
                f"Column {column_id} does not belong to board {card.board_id}",
                details={"column_id": column_id},
            )
        if card.column_id == column.id and not card.is_postponed:
            return card

        tx.remove_marker("not_now")
        card.column_id = column.id
        tx.record("card_triaged", {"column": column.name, "column_id": column.id})
    _log_transition(tx.card, "card_triaged")
    return tx.card


def send_back_to_triage(account_id: int, card_id: int, actor_id: int, *, now=None) -> Card:
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        if tx.card.state != "triaged":
            tx.reject("send_back_to_triage", "only triaged cards can go back to triage")
        tx.card.column_id = None
        tx.record("card_sent_back_to_triage")
    _log_transition(tx.card, "card_sent_back_to_triage")
    return tx.card


def close(account_id: int, card_id: int, actor_id: int, *, now=None) -> Card:
    """Close a published card. Closing a closed card changes nothing."""
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        card = tx.card
        if card.is_drafted:
            tx.reject("close", "drafted cards cannot be closed")
        if card.is_closed:
            return card

        tx.remove_marker("not_now")
        card.closure = Closure(account_id=account_id, user_id=actor_id, created_at=tx.now)
        tx.record("card_closed")
    _log_transition(tx.card, "card_closed")
    return tx.card


def reopen(account_id: int, card_id: int, actor_id: int, *, now=None) -> Card:
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        if not tx.card.is_closed:
            tx.reject("reopen", "card is not closed")
        tx.remove_marker("closure")
        register_activity_spike(tx.card, tx.now)
        tx.record("card_reopened")
    _log_transition(tx.card, "card_reopened")
    return tx.card


def _postpone(tx: CardTransaction, actor) -> None:
    card = tx.card
    if not card.is_published or card.is_postponed:
        tx.reject("postpone")

    # Absorbs the closure: no card_reopened is emitted
    tx.remove_marker("closure")
    tx.remove_marker("activity_spike")
    card.column_id = None
    card.not_now = NotNow(account_id=card.account_id, user_id=actor.id, created_at=tx.now)
    tx.record("card_auto_postponed" if actor.is_system else "card_postponed")


def postpone(account_id: int, card_id: int, actor_id: int, *, now=None) -> Card:
    """Move a card to "not now". A system actor makes it an auto-postpone."""
    actor = directory.get_user(account_id, actor_id)
    with card_transaction(account_id, card_id, actor.id, now) as tx:
        _postpone(tx, actor)
    _log_transition(tx.card, tx.events[-1].action)
    return tx.card


def auto_postpone(account_id: int, card_id: int, inactive_since: datetime, *,
                  now=None) -> Card | None:
    """
    Postpone a stale card as the account's system user.

    Staleness is re-checked under the card lock: a card touched after the
    sweep selected it is left alone and ``None`` is returned.
    """
    actor = directory.system_user(account_id)
    with card_transaction(account_id, card_id, actor.id, now) as tx:
        card = tx.card
        last_active = as_utc(card.last_active_at)
        if not card.is_open or (last_active is not None and last_active >= inactive_since):
            return None
        _postpone(tx, actor)
    _log_transition(tx.card, "card_auto_postponed")
    return tx.card


def resume(account_id: int, card_id: int, actor_id: int, *, now=None) -> Card:
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        if not tx.card.is_postponed:
            tx.reject("resume", "card is not postponed")
        tx.remove_marker("not_now")
        tx.remove_marker("activity_spike")
        tx.record("card_resumed")
    _log_transition(tx.card, "card_resumed")
    return tx.card


def move_to_board(account_id: int, card_id: int, board_id: int, actor_id: int, *,
                  now=None) -> Card:
    """
    Move a card to another board of the same account.

    The card keeps its place only if the destination has a column with the
    same name; otherwise it goes back to triage.
    Current assignees are granted access to the destination board.
    """
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        card = tx.card
        if card.board_id == board_id:
            tx.reject("move_to_board", "card is already on that board")

        new_board = directory.get_board(account_id, board_id)
        old_board = card.board
        old_column = card.column

        match = new_board.find_column_named(old_column.name) if old_column else None
        card.board = new_board
        card.board_id = new_board.id
        card.column_id = match.id if match else None

        for assignee_id in card.assignee_ids:
            directory.grant_board_access(account_id, new_board.id, assignee_id)

        tx.record("card_board_changed", {
            "old_board": old_board.name,
            "new_board": new_board.name,
            "old_board_id": old_board.id,
            "new_board_id": new_board.id,
        })
    _log_transition(tx.card, "card_board_changed")
    return tx.card


def change_title(account_id: int, card_id: int, title: str, actor_id: int, *,
                 now=None) -> Card:
    new_title = (title or "").strip()
    if not new_title:
        raise ValidationError("Card title is required", details={"title": "required"})

    with card_transaction(account_id, card_id, actor_id, now) as tx:
        old_title = tx.card.title
        if old_title == new_title:
            return tx.card
        tx.card.title = new_title
        tx.record("card_title_changed", {"old_title": old_title, "new_title": new_title})
    _log_transition(tx.card, "card_title_changed")
    return tx.card


def change_due_date(account_id: int, card_id: int, due_on: date | None, actor_id: int, *,
                    now=None) -> Card:
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        old_due_on = tx.card.due_on
        if old_due_on == due_on:
            return tx.card
        tx.card.due_on = due_on
        tx.record("card_due_date_changed", {
            "old_due_on": old_due_on.isoformat() if old_due_on else None,
            "new_due_on": due_on.isoformat() if due_on else None,
        })
    _log_transition(tx.card, "card_due_date_changed")
    return tx.card


def assign(account_id: int, card_id: int, assignee_id: int, assigner_id: int, *,
           now=None) -> Card:
    """Add an assignee (cap ASSIGNMENT_LIMIT). The assignee starts watching."""
    assignee = directory.get_user(account_id, assignee_id)
    with card_transaction(account_id, card_id, assigner_id, now) as tx:
        card = tx.card
        current = card.assignee_ids
        if assignee.id in current:
            tx.reject("assign", f"user {assignee.id} is already assigned")
        if len(current) >= ASSIGNMENT_LIMIT:
            raise AssignmentLimitExceeded(card.id, ASSIGNMENT_LIMIT)

        card.assignments.append(Assignment(
            account_id=account_id, assignee_id=assignee.id, assigner_id=assigner_id,
            created_at=tx.now,
        ))
        db.session.flush()
        directory.watch_card(card, assignee.id)
        register_activity_spike(card, tx.now)
        tx.record("card_assigned", {
            "assignee_id": assignee.id,
            "assignee_ids": sorted(current + [assignee.id]),
        })
    _log_transition(tx.card, "card_assigned")
    return tx.card


def unassign(account_id: int, card_id: int, assignee_id: int, actor_id: int, *,
             now=None) -> Card:
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        card = tx.card
        assignment = next((a for a in card.assignments if a.assignee_id == assignee_id), None)
        if assignment is None:
            tx.reject("unassign", f"user {assignee_id} is not assigned")
        card.assignments.remove(assignment)
        db.session.flush()
        tx.record("card_unassigned", {
            "assignee_id": assignee_id,
            "assignee_ids": card.assignee_ids,
        })
    _log_transition(tx.card, "card_unassigned")
    return tx.card


# ═════════════════════════════════════════════════════════════════════════════
# Marker toggles (no event)
# ═════════════════════════════════════════════════════════════════════════════


def gild(account_id: int, card_id: int, actor_id: int, *, now=None) -> Card:
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        if tx.card.goldness is None:
            tx.card.goldness = Goldness(account_id=account_id, created_at=tx.now)
    return tx.card


def ungild(account_id: int, card_id: int, actor_id: int, *, now=None) -> Card:
    with card_transaction(account_id, card_id, actor_id, now) as tx:
        tx.remove_marker("goldness")
    return tx.card


# ═════════════════════════════════════════════════════════════════════════════
# Activity spikes
# ═════════════════════════════════════════════════════════════════════════════


def register_activity_spike(card: Card, now: datetime) -> ActivitySpike | None:
    """Create or refresh the card's spike marker. Only open cards spike."""
    if not card.is_open:
        return None
    if card.activity_spike is None:
        card.activity_spike = ActivitySpike(account_id=card.account_id,
                                            created_at=now, updated_at=now)
    else:
        card.activity_spike.touch(now)
    return card.activity_spike


def detect_comment_spike(card: Card, now: datetime) -> ActivitySpike | None:
    """Spike when enough distinct people commented within the window."""
    since = now - ACTIVITY_SPIKE_WINDOW
    commenters = db.session.execute(
        select(func.count(func.distinct(Comment.creator_id)))
        .where(Comment.card_id == card.id, Comment.created_at >= since)
    ).scalar_one()
    if commenters >= ACTIVITY_SPIKE_MIN_COMMENTERS:
        return register_activity_spike(card, now)
    return None
