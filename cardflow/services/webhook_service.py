"""
Cardflow Core
Webhook management service.

CRUD for board-scoped webhooks plus activation and secret rotation.
Functions return ``(result, None)`` on success or ``(None, error_dict)``
where ``error_dict`` carries ``error`` and ``status``.
"""

import logging
import secrets
from typing import Any
from urllib.parse import urlsplit

from cardflow.models import db
from cardflow.models.board import Board
from cardflow.models.event import EVENT_ACTIONS
from cardflow.models.webhook import Webhook, WebhookDelinquencyTracker, WebhookDelivery

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = ("name", "url", "subscribed_actions")


def paginate_query(query: Any, page: int = 1, per_page: int = 20) -> tuple[list, int]:
    """Apply offset/limit pagination to a SQLAlchemy query.

    Returns:
        Tuple of (items list, total count).
    """
    per_page = min(max(per_page, 1), 100)
    page = max(page, 1)
    total = query.count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return items, total


def generate_secret() -> str:
    return secrets.token_hex(32)


def _validate(data: dict, *, partial: bool) -> dict | None:
    if not partial or "url" in data:
        url = (data.get("url") or "").strip()
        if not url:
            return {"error": "url is required", "status": 400}
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            return {"error": "url must be an http(s) URL", "status": 400}

    if not partial or "subscribed_actions" in data:
        actions = data.get("subscribed_actions")
        if not isinstance(actions, list) or not actions:
            return {"error": "subscribed_actions must be a non-empty list", "status": 400}
        invalid = [a for a in actions if a not in EVENT_ACTIONS]
        if invalid:
            return {"error": f"Invalid actions: {invalid}", "status": 400}
    return None


def _scoped(account_id: int, webhook_id: int) -> Webhook | None:
    webhook = db.session.get(Webhook, webhook_id)
    if webhook is None or webhook.account_id != account_id:
        return None
    return webhook


def _not_found(webhook_id) -> dict:
    return {"error": f"Webhook {webhook_id} not found", "status": 404}


# ── CRUD ─────────────────────────────────────────────────────────────────────

def list_webhooks(account_id: int, board_id: int, page: int = 1, per_page: int = 20) -> dict:
    q = Webhook.query.filter_by(account_id=account_id, board_id=board_id).order_by(Webhook.id)
    items, total = paginate_query(q, page, per_page)
    return {"items": [w.to_dict() for w in items], "total": total}


def create_webhook(account_id: int, board_id: int, data: dict) -> tuple[dict | None, dict | None]:
    """Create a webhook on a board.

    The signing secret is generated here and returned once, in this
    response only.
    """
    board = db.session.get(Board, board_id)
    if board is None or board.account_id != account_id:
        return None, {"error": f"Board {board_id} not found", "status": 404}

    err = _validate(data, partial=False)
    if err:
        return None, err

    webhook = Webhook(
        account_id=account_id,
        board_id=board_id,
        name=(data.get("name") or "").strip()[:100],
        url=data["url"].strip(),
        signing_secret=generate_secret(),
        subscribed_actions=list(dict.fromkeys(data["subscribed_actions"])),
        active=True,
    )
    webhook.delinquency_tracker = WebhookDelinquencyTracker(account_id=account_id,
                                                            consecutive_failures_count=0)
    db.session.add(webhook)
    db.session.commit()
    logger.info("Webhook created: %s", webhook.url,
                extra={"account_id": account_id, "webhook_id": webhook.id})
    return webhook.to_dict(include_secret=True), None


def get_webhook(account_id: int, webhook_id: int) -> tuple[dict | None, dict | None]:
    webhook = _scoped(account_id, webhook_id)
    if webhook is None:
        return None, _not_found(webhook_id)
    result = webhook.to_dict()
    tracker = webhook.delinquency_tracker
    result["delinquency"] = tracker.to_dict() if tracker else None
    return result, None


def update_webhook(account_id: int, webhook_id: int, data: dict) -> tuple[dict | None, dict | None]:
    webhook = _scoped(account_id, webhook_id)
    if webhook is None:
        return None, _not_found(webhook_id)

    err = _validate(data, partial=True)
    if err:
        return None, err

    for key in _EDITABLE_FIELDS:
        if key in data:
            value = data[key]
            if key == "subscribed_actions":
                value = list(dict.fromkeys(value))
            elif isinstance(value, str):
                value = value.strip()
            setattr(webhook, key, value)
    db.session.commit()
    return webhook.to_dict(), None


def delete_webhook(account_id: int, webhook_id: int) -> dict | None:
    """Returns an error dict if not found, None on success."""
    webhook = _scoped(account_id, webhook_id)
    if webhook is None:
        return _not_found(webhook_id)
    db.session.delete(webhook)
    db.session.commit()
    logger.info("Webhook deleted", extra={"account_id": account_id, "webhook_id": webhook_id})
    return None


# ── Activation / secrets ─────────────────────────────────────────────────────

def activate_webhook(account_id: int, webhook_id: int) -> tuple[dict | None, dict | None]:
    """Reactivate a webhook and clear its failure streak."""
    webhook = _scoped(account_id, webhook_id)
    if webhook is None:
        return None, _not_found(webhook_id)
    webhook.active = True
    if webhook.delinquency_tracker is None:
        webhook.delinquency_tracker = WebhookDelinquencyTracker(account_id=account_id,
                                                                consecutive_failures_count=0)
    else:
        webhook.delinquency_tracker.reset()
    db.session.commit()
    return webhook.to_dict(), None


def deactivate_webhook(account_id: int, webhook_id: int) -> tuple[dict | None, dict | None]:
    webhook = _scoped(account_id, webhook_id)
    if webhook is None:
        return None, _not_found(webhook_id)
    webhook.active = False
    db.session.commit()
    return webhook.to_dict(), None


def rotate_secret(account_id: int, webhook_id: int) -> tuple[dict | None, dict | None]:
    webhook = _scoped(account_id, webhook_id)
    if webhook is None:
        return None, _not_found(webhook_id)
    webhook.signing_secret = generate_secret()
    db.session.commit()
    return webhook.to_dict(include_secret=True), None


# ── Deliveries ───────────────────────────────────────────────────────────────

def list_deliveries(account_id: int, webhook_id: int, page: int = 1,
                    per_page: int = 20) -> tuple[dict | None, dict | None]:
    webhook = _scoped(account_id, webhook_id)
    if webhook is None:
        return None, _not_found(webhook_id)
    q = WebhookDelivery.query.filter_by(webhook_id=webhook.id).order_by(
        WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc()
    )
    items, total = paginate_query(q, page, per_page)
    return {"items": [d.to_dict() for d in items], "total": total}, None
