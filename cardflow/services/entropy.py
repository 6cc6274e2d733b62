"""
Cardflow Core
Entropy: automatic postponement of stale cards.

The effective period for a card is its board's Entropy row, else its
account's, else ``DEFAULT_AUTO_POSTPONE_PERIOD``. A published, open card
whose ``last_active_at`` is older than ``now - period`` is postponed by the
account's system user, which records ``card_auto_postponed``.
"""

import logging
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func, select

from cardflow.core.exceptions import ValidationError
from cardflow.models import as_utc, db, utcnow
from cardflow.models.account import Account
from cardflow.models.board import Board, Entropy
from cardflow.models.card import Card
from cardflow.services import card_lifecycle, directory

logger = logging.getLogger(__name__)

POSTPONING_SOON_RATIO = 0.75


# ── Configuration ────────────────────────────────────────────────────────────

def default_period() -> int:
    return int(current_app.config.get("DEFAULT_AUTO_POSTPONE_PERIOD", 30 * 24 * 3600))


def _entropy_row(container_type: str, container_id: int) -> Entropy | None:
    return db.session.execute(
        select(Entropy).where(Entropy.container_type == container_type,
                              Entropy.container_id == container_id)
    ).scalar_one_or_none()


def effective_period(account_id: int, board_id: int | None = None) -> int:
    """Seconds of inactivity allowed before auto-postpone."""
    if board_id is not None:
        row = _entropy_row("board", board_id)
        if row is not None:
            return row.auto_postpone_period
    row = _entropy_row("account", account_id)
    if row is not None:
        return row.auto_postpone_period
    return default_period()


def set_entropy(account_id: int, period, board_id: int | None = None) -> Entropy:
    """Configure the account-level period, or a board override when ``board_id`` is given."""
    if isinstance(period, bool) or not isinstance(period, int) or period <= 0:
        raise ValidationError("auto_postpone_period must be a positive number of seconds",
                              details={"auto_postpone_period": period})

    if board_id is not None:
        directory.get_board(account_id, board_id)
        container = ("board", board_id)
    else:
        directory.get_account(account_id)
        container = ("account", account_id)

    row = _entropy_row(*container)
    if row is None:
        row = Entropy(account_id=account_id, container_type=container[0],
                      container_id=container[1], auto_postpone_period=period)
        db.session.add(row)
    else:
        row.auto_postpone_period = period
    db.session.commit()
    logger.info("Entropy set: %s %s = %ss", container[0], container[1], period,
                extra={"account_id": account_id})
    return row


def _last_active(card: Card) -> datetime | None:
    return as_utc(card.last_active_at or card.created_at)


def auto_postpone_at(card: Card) -> datetime | None:
    """When the card will be auto-postponed if nothing happens, or None if it won't."""
    if not card.is_open:
        return None
    last_active = _last_active(card)
    if last_active is None:
        return None
    return last_active + timedelta(seconds=effective_period(card.account_id, card.board_id))


# ── Queries ──────────────────────────────────────────────────────────────────

def _open_cards(account_id: int, board_id: int):
    activity = func.coalesce(Card.last_active_at, Card.created_at)
    return (
        select(Card)
        .where(
            Card.account_id == account_id,
            Card.board_id == board_id,
            Card.status == "published",
            ~Card.closure.has(),
            ~Card.not_now.has(),
        ),
        activity,
    )


def stale_card_ids(account_id: int, board_id: int, cutoff: datetime) -> list[int]:
    query, activity = _open_cards(account_id, board_id)
    return list(db.session.execute(
        query.with_only_columns(Card.id).where(activity < cutoff).order_by(Card.id)
    ).scalars())


def postponing_soon(account_id: int, now: datetime | None = None) -> list[Card]:
    """Open cards past 75% of their period that have not reached 100% yet."""
    now = now or utcnow()
    boards = db.session.execute(
        select(Board.id).where(Board.account_id == account_id).order_by(Board.id)
    ).scalars().all()

    cards = []
    for board_id in boards:
        period = effective_period(account_id, board_id)
        soon_cutoff = now - timedelta(seconds=period * POSTPONING_SOON_RATIO)
        hard_cutoff = now - timedelta(seconds=period)
        query, activity = _open_cards(account_id, board_id)
        cards.extend(db.session.execute(
            query.where(activity <= soon_cutoff, activity > hard_cutoff)
            .order_by(activity, Card.id)
        ).scalars())
    return cards


# ── Sweep ────────────────────────────────────────────────────────────────────

def sweep(now: datetime | None = None) -> dict:
    """
    Auto-postpone every stale card in every account.

    Each card is postponed in its own transaction; a failure is logged and
    the sweep moves on.
    """
    now = now or utcnow()
    summary = {"accounts": 0, "boards": 0, "candidates": 0, "postponed": 0,
               "skipped": 0, "failed": 0}

    account_ids = db.session.execute(select(Account.id).order_by(Account.id)).scalars().all()
    for account_id in account_ids:
        summary["accounts"] += 1
        boards = db.session.execute(
            select(Board.id).where(Board.account_id == account_id).order_by(Board.id)
        ).scalars().all()
        for board_id in boards:
            summary["boards"] += 1
            cutoff = now - timedelta(seconds=effective_period(account_id, board_id))
            for card_id in stale_card_ids(account_id, board_id, cutoff):
                summary["candidates"] += 1
                try:
                    card = card_lifecycle.auto_postpone(account_id, card_id, cutoff, now=now)
                except Exception:
                    db.session.rollback()
                    summary["failed"] += 1
                    logger.exception("Auto-postpone of card %s failed", card_id,
                                     extra={"account_id": account_id, "card_id": card_id})
                    continue
                summary["postponed" if card is not None else "skipped"] += 1

    if summary["candidates"]:
        logger.info("Entropy sweep: %s", summary)
    return summary
