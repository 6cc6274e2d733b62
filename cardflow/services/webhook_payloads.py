"""
Cardflow Core
Webhook payload rendering and signing.

The body format depends on the target URL:

    Slack incoming webhook     hooks.slack.com/services/...      JSON {"text": markdown}
    Campfire room              .../rooms/<id>/<token>/messages   text/html snippet
    Basecamp chatbot           .../integrations/<token>/buckets/<id>/chats/<id>/lines
                                                                 form-encoded content=<html>
    anything else              JSON {"event": {...}}

The signature is the HMAC-SHA256 hex digest of the exact bytes sent.
"""

import hashlib
import hmac
import json
import re
from html import escape
from urllib.parse import urlencode, urlsplit

from flask import current_app

from cardflow.models import db, isoformat, utcnow
from cardflow.models.account import User
from cardflow.models.board import Board
from cardflow.models.card import Card
from cardflow.models.collaboration import Comment
from cardflow.models.event import Event

USER_AGENT = "Cardflow-Webhooks/1.0"

_SLACK_HOST = "hooks.slack.com"
_CAMPFIRE_PATH = re.compile(r"/rooms/\d+/[^/]+/messages/?$")
_BASECAMP_PATH = re.compile(r"/integrations/[^/]+/buckets/\d+/chats/\d+/lines/?$")

_ACTION_SENTENCES = {
    "card_published": "added",
    "card_triaged": "moved to {column}",
    "card_sent_back_to_triage": "sent back to triage",
    "card_closed": "closed",
    "card_reopened": "reopened",
    "card_postponed": "moved to Not Now",
    "card_auto_postponed": "was auto-postponed",
    "card_resumed": "resumed",
    "card_board_changed": "moved from {old_board} to {new_board}",
    "card_title_changed": "renamed from {old_title}",
    "card_assigned": "assigned",
    "card_unassigned": "unassigned",
    "card_due_date_changed": "changed the due date",
    "comment_created": "commented",
}


def detect_format(url: str) -> str:
    """``slack``, ``campfire``, ``basecamp`` or ``json``."""
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    if host == _SLACK_HOST and parts.path.startswith("/services/"):
        return "slack"
    if _CAMPFIRE_PATH.search(parts.path):
        return "campfire"
    if _BASECAMP_PATH.search(parts.path):
        return "basecamp"
    return "json"


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign(secret, body), signature or "")


# ── Document ─────────────────────────────────────────────────────────────────

def card_url(card: Card) -> str:
    base = current_app.config.get("APP_BASE_URL", "").rstrip("/")
    return f"{base}/{card.account_id}/cards/{card.number}"


def event_document(event: Event) -> dict:
    """The ``{"event": {...}}`` document for an Event."""
    creator = db.session.get(User, event.creator_id) if event.creator_id else None
    board = db.session.get(Board, event.board_id)

    comment = None
    if event.subject_type == "comment":
        comment = db.session.get(Comment, event.subject_id)
        card = comment.card if comment else None
    else:
        card = db.session.get(Card, event.subject_id)

    doc = {
        "id": event.id,
        "action": event.action,
        "created_at": isoformat(event.created_at),
        "creator": {"id": creator.id, "name": creator.name} if creator else None,
        "particulars": event.particulars or {},
        "board": {"id": board.id, "name": board.name} if board else None,
        "card": None,
    }
    if card is not None:
        doc["card"] = {
            "id": card.id,
            "number": card.number,
            "title": card.title,
            "status": card.status,
            "board_id": card.board_id,
            "column_id": card.column_id,
            "url": card_url(card),
        }
    if comment is not None:
        doc["comment"] = {
            "id": comment.id,
            "body_ref": comment.body_ref,
            "created_at": isoformat(comment.created_at),
        }
    return {"event": doc}


def describe(document: dict) -> tuple[str, str, str | None]:
    """(actor name, sentence, card url) for chat-style renderings."""
    event = document["event"]
    actor = (event.get("creator") or {}).get("name") or "Someone"
    card = event.get("card") or {}
    label = f"#{card['number']} {card['title']}" if card else "a card"

    template = _ACTION_SENTENCES.get(event["action"], event["action"])
    try:
        verb = template.format(**(event.get("particulars") or {}))
    except (KeyError, IndexError):
        verb = event["action"]

    if event["action"] == "card_auto_postponed":
        return actor, f"{label} {verb}", card.get("url")
    return actor, f"{actor} {verb} {label}", card.get("url")


# ── Rendering ────────────────────────────────────────────────────────────────

def render(url: str, event: Event) -> tuple[bytes, str]:
    """Return ``(body, content_type)`` for delivering ``event`` to ``url``."""
    document = event_document(event)
    fmt = detect_format(url)

    if fmt == "json":
        body = json.dumps(document, separators=(",", ":"), sort_keys=True, default=str)
        return body.encode(), "application/json"

    _, sentence, link = describe(document)
    if fmt == "slack":
        text = f"{sentence} <{link}|Open>" if link else sentence
        return json.dumps({"text": text}, separators=(",", ":")).encode(), "application/json"

    html = escape(sentence)
    if link:
        html = f'<a href="{escape(link)}">{html}</a>'
    if fmt == "campfire":
        return html.encode(), "text/html"
    return urlencode({"content": html}).encode(), "application/x-www-form-urlencoded"


def build_headers(secret: str, body: bytes, content_type: str, action: str, now=None) -> dict:
    return {
        "Content-Type": content_type,
        "User-Agent": USER_AGENT,
        "X-Webhook-Signature": sign(secret, body),
        "X-Webhook-Timestamp": isoformat(now or utcnow()),
        "X-Webhook-Event": action,
    }
