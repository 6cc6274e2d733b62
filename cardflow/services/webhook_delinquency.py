"""
Cardflow Core
Webhook delinquency tracking.

A webhook that fails ``DELINQUENCY_THRESHOLD`` times in a row within
``DELINQUENCY_WINDOW`` of the first failure of the streak is deactivated.
A success resets the streak. Updates are serialized per webhook.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select

from cardflow.models import as_utc, db, utcnow
from cardflow.models.webhook import Webhook, WebhookDelinquencyTracker
from cardflow.services.helpers.locks import entity_lock

logger = logging.getLogger(__name__)

DELINQUENCY_THRESHOLD = 10
DELINQUENCY_WINDOW = timedelta(hours=1)


def _locked_tracker(webhook: Webhook) -> WebhookDelinquencyTracker:
    tracker = db.session.execute(
        select(WebhookDelinquencyTracker)
        .where(WebhookDelinquencyTracker.webhook_id == webhook.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if tracker is None:
        tracker = WebhookDelinquencyTracker(account_id=webhook.account_id,
                                            webhook_id=webhook.id,
                                            consecutive_failures_count=0)
        db.session.add(tracker)
    return tracker


def record_failure(webhook_id: int, *, now: datetime | None = None) -> WebhookDelinquencyTracker:
    """Count one failed delivery; deactivates the webhook at the threshold."""
    now = now or utcnow()
    with entity_lock("webhook", webhook_id):
        try:
            webhook = db.session.execute(
                select(Webhook).where(Webhook.id == webhook_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()
            tracker = _locked_tracker(webhook)

            first = as_utc(tracker.first_failure_at)
            if not tracker.consecutive_failures_count or first is None \
                    or now - first > DELINQUENCY_WINDOW:
                tracker.first_failure_at = now
                tracker.consecutive_failures_count = 1
            else:
                tracker.consecutive_failures_count += 1

            if (webhook.active
                    and tracker.consecutive_failures_count >= DELINQUENCY_THRESHOLD
                    and now - as_utc(tracker.first_failure_at) <= DELINQUENCY_WINDOW):
                webhook.active = False
                logger.warning(
                    "Webhook %s deactivated after %d consecutive failures",
                    webhook.id, tracker.consecutive_failures_count,
                    extra={"account_id": webhook.account_id, "webhook_id": webhook.id},
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    return tracker


def record_success(webhook_id: int) -> None:
    with entity_lock("webhook", webhook_id):
        try:
            webhook = db.session.get(Webhook, webhook_id)
            if webhook is None:
                return
            tracker = _locked_tracker(webhook)
            if tracker.consecutive_failures_count or tracker.first_failure_at:
                tracker.reset()
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
