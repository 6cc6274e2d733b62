"""
Cardflow Core
Directory service: accounts, users, boards, columns, accesses and watches.

The surrounding product owns identity and board administration; this module
is the narrow read/write surface the core needs from it. Lookups are always
account-scoped. ``create_*`` helpers commit; the access and watch helpers
only flush because lifecycle transitions call them inside their own
transaction.
"""

import logging

from sqlalchemy import select

from cardflow.core.exceptions import NotFoundError, ValidationError
from cardflow.models import db
from cardflow.models.account import Account, User
from cardflow.models.board import INVOLVEMENTS, Access, Board, BoardColumn
from cardflow.models.card import Watch
from cardflow.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

SYSTEM_USER_NAME = "System"


# ── Accounts & users ─────────────────────────────────────────────────────────

def create_account(name: str) -> Account:
    """Create an account together with its system user."""
    if not (name or "").strip():
        raise ValidationError("Account name is required")
    account = Account(name=name.strip(), cards_count=0)
    db.session.add(account)
    db.session.flush()
    db.session.add(User(account_id=account.id, name=SYSTEM_USER_NAME, role="system",
                        bundle_email_enabled=False))
    db.session.commit()
    logger.info("Account created: %s", account, extra={"account_id": account.id})
    return account


def get_account(account_id: int) -> Account:
    account = db.session.get(Account, account_id)
    if account is None:
        raise NotFoundError(resource="Account", resource_id=account_id)
    return account


def create_user(account_id: int, name: str, *, email: str | None = None,
                bundle_email_enabled: bool = True,
                bundle_period_seconds: int | None = None) -> User:
    if not (name or "").strip():
        raise ValidationError("User name is required")
    user = User(account_id=account_id, name=name.strip(), email=email, role="member",
                bundle_email_enabled=bundle_email_enabled)
    if bundle_period_seconds is not None:
        if bundle_period_seconds <= 0:
            raise ValidationError("bundle_period_seconds must be positive")
        user.bundle_period_seconds = bundle_period_seconds
    db.session.add(user)
    db.session.commit()
    return user


def get_user(account_id: int, user_id: int) -> User:
    return get_scoped(User, user_id, account_id=account_id)


def system_user(account_id: int) -> User:
    """The account's distinguished system actor (created on first use)."""
    user = db.session.execute(
        select(User)
        .where(User.account_id == account_id, User.role == "system")
        .order_by(User.id)
        .limit(1)
    ).scalar_one_or_none()
    if user is None:
        user = User(account_id=account_id, name=SYSTEM_USER_NAME, role="system",
                    bundle_email_enabled=False)
        db.session.add(user)
        db.session.flush()
    return user


# ── Boards & columns ─────────────────────────────────────────────────────────

def create_board(account_id: int, name: str, *, creator_id: int | None = None,
                 column_names=()) -> Board:
    if not (name or "").strip():
        raise ValidationError("Board name is required")
    board = Board(account_id=account_id, name=name.strip(), creator_id=creator_id)
    db.session.add(board)
    db.session.flush()
    for position, column_name in enumerate(column_names):
        db.session.add(BoardColumn(account_id=account_id, board_id=board.id,
                                   name=column_name, position=position))
    if creator_id is not None:
        grant_board_access(account_id, board.id, creator_id, involvement="watching")
    db.session.commit()
    return board


def get_board(account_id: int, board_id: int) -> Board:
    return get_scoped(Board, board_id, account_id=account_id)


# ── Access & involvement ─────────────────────────────────────────────────────

def grant_board_access(account_id: int, board_id: int, user_id: int,
                       involvement: str | None = None) -> Access:
    """
    Ensure ``user_id`` has access to the board.

    Without an explicit ``involvement`` an existing grant is left untouched
    and a new one is created as ``access_only``.
    """
    if involvement is not None and involvement not in INVOLVEMENTS:
        raise ValidationError(f"Unknown involvement: {involvement}")

    access = db.session.execute(
        select(Access).where(Access.board_id == board_id, Access.user_id == user_id)
    ).scalar_one_or_none()
    if access is None:
        access = Access(account_id=account_id, board_id=board_id, user_id=user_id,
                        involvement=involvement or "access_only")
        db.session.add(access)
    elif involvement is not None:
        access.involvement = involvement
    db.session.flush()
    return access


def board_watcher_ids(board_id: int) -> set[int]:
    rows = db.session.execute(
        select(Access.user_id).where(Access.board_id == board_id,
                                     Access.involvement == "watching")
    ).scalars()
    return set(rows)


# ── Card watches ─────────────────────────────────────────────────────────────

def watch_card(card, user_id: int) -> Watch:
    """Start (or resume) watching a card."""
    watch = db.session.execute(
        select(Watch).where(Watch.card_id == card.id, Watch.user_id == user_id)
    ).scalar_one_or_none()
    if watch is None:
        watch = Watch(account_id=card.account_id, card_id=card.id, user_id=user_id,
                      watching=True)
        db.session.add(watch)
    else:
        watch.watching = True
    db.session.flush()
    return watch


def unwatch_card(card, user_id: int) -> None:
    watch = db.session.execute(
        select(Watch).where(Watch.card_id == card.id, Watch.user_id == user_id)
    ).scalar_one_or_none()
    if watch is not None:
        watch.watching = False
        db.session.flush()


def card_watcher_ids(card_id: int) -> set[int]:
    rows = db.session.execute(
        select(Watch.user_id).where(Watch.card_id == card_id, Watch.watching.is_(True))
    ).scalars()
    return set(rows)
