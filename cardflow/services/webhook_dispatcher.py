"""
Cardflow Core
Webhook Dispatcher.

Delivers a committed Event to every active webhook on its board that
subscribes to the event's action. Each (webhook, event) pair is attempted
at most once: a delivery row is claimed as ``pending`` before anything is
sent, so a re-run of the fan-out task finds the row and skips it.

    pending → in_progress → completed   (2xx)
                          → errored     (SSRF rejection, network error,
                                         timeout or non-2xx response)

Failures feed the delinquency tracker; there are no automatic retries.
"""

import logging
from datetime import datetime

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from cardflow.core.exceptions import DeliveryFailure, SsrfRejected
from cardflow.integrations.webhook_gateway import webhook_gateway
from cardflow.models import db, utcnow
from cardflow.models.event import Event
from cardflow.models.webhook import Webhook, WebhookDelivery
from cardflow.services import webhook_delinquency, webhook_payloads
from cardflow.services.task_queue import register_task

logger = logging.getLogger(__name__)

_SNAPSHOT_BODY_LIMIT = 100 * 1024


def matching_webhooks(event: Event) -> list[Webhook]:
    candidates = db.session.execute(
        select(Webhook)
        .where(Webhook.board_id == event.board_id, Webhook.active.is_(True))
        .order_by(Webhook.id)
    ).scalars().all()
    return [webhook for webhook in candidates if webhook.subscribes_to(event.action)]


@register_task("dispatch_event_webhooks")
def dispatch_event_webhooks(event_id: int, now: datetime | None = None) -> list[WebhookDelivery]:
    event = db.session.get(Event, event_id)
    if event is None:
        logger.warning("dispatch_event_webhooks: event %s not found", event_id)
        return []

    deliveries = []
    for webhook_id in [w.id for w in matching_webhooks(event)]:
        try:
            delivery = deliver(webhook_id, event.id, now=now)
        except Exception:
            db.session.rollback()
            logger.exception("Webhook %s delivery of event %s failed", webhook_id, event_id,
                             extra={"webhook_id": webhook_id, "event_id": event_id})
            continue
        if delivery is not None:
            deliveries.append(delivery)
    return deliveries


def _claim(webhook: Webhook, event: Event) -> WebhookDelivery | None:
    exists = db.session.execute(
        select(WebhookDelivery.id).where(WebhookDelivery.webhook_id == webhook.id,
                                         WebhookDelivery.event_id == event.id)
    ).scalar_one_or_none()
    if exists is not None:
        return None

    delivery = WebhookDelivery(account_id=webhook.account_id, webhook_id=webhook.id,
                               event_id=event.id, state="pending")
    db.session.add(delivery)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return None
    return delivery


def deliver(webhook_id: int, event_id: int, *, now: datetime | None = None) -> WebhookDelivery | None:
    """
    Attempt one delivery of ``event_id`` to ``webhook_id``.

    Returns the delivery row, or None when the pair was already delivered
    (or claimed by a concurrent worker).
    """
    webhook = db.session.get(Webhook, webhook_id)
    event = db.session.get(Event, event_id)
    if webhook is None or event is None:
        return None

    delivery = _claim(webhook, event)
    if delivery is None:
        logger.debug("Delivery of event %s to webhook %s already exists", event_id, webhook_id)
        return None

    log_extra = {"account_id": webhook.account_id, "webhook_id": webhook.id,
                 "event_id": event.id, "event_action": event.action,
                 "delivery_id": delivery.id}
    try:
        return _send(webhook, event, delivery, log_extra, now)
    except Exception as exc:
        # A claimed row always ends completed or errored.
        db.session.rollback()
        logger.exception("Webhook delivery crashed", extra=log_extra)
        return _errored(delivery, f"Unexpected error: {exc}", now=now)


def _send(webhook: Webhook, event: Event, delivery: WebhookDelivery, log_extra: dict,
          now: datetime | None) -> WebhookDelivery:
    body, content_type = webhook_payloads.render(webhook.url, event)
    headers = webhook_payloads.build_headers(webhook.signing_secret, body, content_type,
                                             event.action, now=now)
    delivery.state = "in_progress"
    delivery.request = {
        "url": webhook.url,
        "headers": {k: v for k, v in headers.items() if k != "X-Webhook-Signature"},
        "body": body.decode(errors="replace")[:_SNAPSHOT_BODY_LIMIT],
    }
    db.session.commit()

    cfg = current_app.config
    try:
        result = webhook_gateway.post(
            webhook.url, body, headers,
            timeout=cfg.get("WEBHOOK_TIMEOUT_SECONDS", 7),
            max_response_bytes=cfg.get("WEBHOOK_MAX_RESPONSE_BYTES", 100 * 1024),
        )
    except SsrfRejected as exc:
        logger.warning("Webhook delivery rejected: %s", exc, extra=log_extra)
        return _errored(delivery, str(exc), now=now)
    except DeliveryFailure as exc:
        logger.warning("Webhook delivery failed: %s", exc, extra=log_extra)
        return _errored(delivery, str(exc), now=now)

    delivery.response = result.to_snapshot()
    if result.ok:
        delivery.state = "completed"
        db.session.commit()
        webhook_delinquency.record_success(webhook.id)
        logger.info("Webhook delivered (%s)", result.status_code, extra=log_extra)
        return delivery

    logger.warning("Webhook responded %s", result.status_code, extra=log_extra)
    return _errored(delivery, f"HTTP {result.status_code}", now=now)


def _errored(delivery: WebhookDelivery, error: str, *, now: datetime | None) -> WebhookDelivery:
    delivery.state = "errored"
    delivery.error = error[:2000]
    db.session.commit()
    webhook_delinquency.record_failure(delivery.webhook_id, now=now or utcnow())
    return delivery
