"""
Cardflow Core
Cards Blueprint.

Provides:
    - Card creation and lookup
    - One POST endpoint per lifecycle operation
    - Comments and mentions
    - Card event history
    - Cards close to auto-postponement

Service exceptions (InvalidTransition, NotFoundError, ...) are mapped to
the standard error envelope by ``register_error_handlers``.
"""

from __future__ import annotations

import logging
from datetime import date

from flask import Blueprint, jsonify, request

from cardflow.blueprints import current_account_id, current_actor_id, int_field, json_body
from cardflow.core.exceptions import ValidationError
from cardflow.models import db, isoformat
from cardflow.models.event import EVENT_ACTIONS
from cardflow.models.subject import SubjectRef
from cardflow.services import card_lifecycle, comments, directory, entropy, event_log

logger = logging.getLogger(__name__)

cards_bp = Blueprint("cards", __name__, url_prefix="/api/v1")


def _due_on(data: dict) -> date | None:
    raw = data.get("due_on")
    if raw in (None, ""):
        return None
    try:
        return date.fromisoformat(raw)
    except (TypeError, ValueError):
        raise ValidationError("due_on must be an ISO date (YYYY-MM-DD)",
                              details={"due_on": "invalid"}) from None


def _card_payload(card) -> dict:
    result = card.to_dict()
    result["auto_postpone_at"] = isoformat(entropy.auto_postpone_at(card))
    return result


# ═══════════════════════════════════════════════════════════════════════════
#  CARDS
# ═══════════════════════════════════════════════════════════════════════════

@cards_bp.route("/cards", methods=["POST"])
def create_card():
    """Create a drafted card."""
    account_id = current_account_id()
    actor_id = current_actor_id()
    data = json_body()

    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title is required", details={"title": "required"})

    card = card_lifecycle.create_card(
        account_id, int_field(data, "board_id"), actor_id, title, due_on=_due_on(data),
    )
    if data.get("mentionee_ids"):
        comments.mention_in_card(account_id, card.id, actor_id, data["mentionee_ids"])
    return jsonify(_card_payload(card)), 201


@cards_bp.route("/cards/postponing-soon", methods=["GET"])
def postponing_soon():
    """Open cards that will be auto-postponed soon."""
    account_id = current_account_id()
    cards = entropy.postponing_soon(account_id)
    return jsonify({"items": [_card_payload(c) for c in cards], "total": len(cards)})


@cards_bp.route("/cards/<int:card_id>", methods=["GET"])
def get_card(card_id):
    card = card_lifecycle.get_card(current_account_id(), card_id)
    return jsonify(_card_payload(card))


@cards_bp.route("/cards/<int:card_id>/events", methods=["GET"])
def card_events(card_id):
    """Audit trail of a card, oldest first."""
    account_id = current_account_id()
    card = card_lifecycle.get_card(account_id, card_id)

    action = request.args.get("action")
    if action and action not in EVENT_ACTIONS:
        raise ValidationError(f"Unknown action: {action}")

    events = event_log.list_events(account_id, subject=SubjectRef.card(card.id), action=action)
    return jsonify({"items": [e.to_dict() for e in events], "total": len(events)})


# ═══════════════════════════════════════════════════════════════════════════
#  LIFECYCLE OPERATIONS
# ═══════════════════════════════════════════════════════════════════════════

def _no_args(fn):
    return lambda account_id, card_id, actor_id, data: fn(account_id, card_id, actor_id)


_OPERATIONS = {
    "publish": _no_args(card_lifecycle.publish),
    "send_back_to_triage": _no_args(card_lifecycle.send_back_to_triage),
    "close": _no_args(card_lifecycle.close),
    "reopen": _no_args(card_lifecycle.reopen),
    "postpone": _no_args(card_lifecycle.postpone),
    "resume": _no_args(card_lifecycle.resume),
    "gild": _no_args(card_lifecycle.gild),
    "ungild": _no_args(card_lifecycle.ungild),
    "triage": lambda a, c, u, d: card_lifecycle.triage_into(a, c, int_field(d, "column_id"), u),
    "move": lambda a, c, u, d: card_lifecycle.move_to_board(a, c, int_field(d, "board_id"), u),
    "title": lambda a, c, u, d: card_lifecycle.change_title(a, c, d.get("title"), u),
    "due_date": lambda a, c, u, d: card_lifecycle.change_due_date(a, c, _due_on(d), u),
    "assign": lambda a, c, u, d: card_lifecycle.assign(a, c, int_field(d, "assignee_id"), u),
    "unassign": lambda a, c, u, d: card_lifecycle.unassign(a, c, int_field(d, "assignee_id"), u),
}


@cards_bp.route("/cards/<int:card_id>/<operation>", methods=["POST"])
def card_operation(card_id, operation):
    """Apply a lifecycle operation, e.g. POST /cards/7/close."""
    handler = _OPERATIONS.get(operation)
    if handler is None:
        return jsonify({"error": f"Unknown operation: {operation}",
                        "operations": sorted(_OPERATIONS)}), 404

    account_id = current_account_id()
    actor_id = current_actor_id()
    directory.get_user(account_id, actor_id)
    card = handler(account_id, card_id, actor_id, json_body())
    return jsonify(_card_payload(card))


# ═══════════════════════════════════════════════════════════════════════════
#  COLLABORATION
# ═══════════════════════════════════════════════════════════════════════════

@cards_bp.route("/cards/<int:card_id>/comments", methods=["POST"])
def create_comment(card_id):
    account_id = current_account_id()
    actor_id = current_actor_id()
    data = json_body()
    comment = comments.create_comment(
        account_id, card_id, actor_id, data.get("body_ref"),
        mentionee_ids=data.get("mentionee_ids") or (),
    )
    return jsonify(comment.to_dict()), 201


@cards_bp.route("/cards/<int:card_id>/mentions", methods=["POST"])
def mention(card_id):
    """Record mentions made in the card description."""
    account_id = current_account_id()
    actor_id = current_actor_id()
    mentionee_ids = json_body().get("mentionee_ids")
    if not isinstance(mentionee_ids, list) or not mentionee_ids:
        raise ValidationError("mentionee_ids must be a non-empty list")
    mentions = comments.mention_in_card(account_id, card_id, actor_id, mentionee_ids)
    return jsonify({"items": [m.to_dict() for m in mentions]}), 201


@cards_bp.route("/cards/<int:card_id>/watch", methods=["POST", "DELETE"])
def watch(card_id):
    account_id = current_account_id()
    actor_id = current_actor_id()
    card = card_lifecycle.get_card(account_id, card_id)
    directory.get_user(account_id, actor_id)
    if request.method == "POST":
        directory.watch_card(card, actor_id)
    else:
        directory.unwatch_card(card, actor_id)
    db.session.commit()
    return jsonify({"card_id": card.id, "watching": request.method == "POST"})
