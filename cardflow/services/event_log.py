"""
Cardflow Core
Event log: the append-only write path for audit events.

Every card transition appends exactly one Event inside the same transaction
as the state change (``append_event`` only flushes, the caller keeps
transaction control). ``commit_and_dispatch`` commits that transaction and,
only once the commit has succeeded, hands each event id to the task queue
as two independent fan-out tasks.
"""

import logging
from datetime import datetime

from sqlalchemy import select

from cardflow.models import db, utcnow
from cardflow.models.event import EVENT_ACTIONS, Event
from cardflow.models.subject import EVENT_SUBJECT_KINDS, SubjectRef
from cardflow.services.helpers.scoped_queries import get_scoped
from cardflow.services.task_queue import task_queue

logger = logging.getLogger(__name__)

FANOUT_TASKS = ("route_event_notifications", "dispatch_event_webhooks")


def append_event(
    *,
    account_id: int,
    board_id: int,
    creator_id: int | None,
    action: str,
    subject: SubjectRef,
    particulars: dict | None = None,
    created_at: datetime | None = None,
) -> Event:
    """
    Append a single event. Uses ``flush`` so callers keep transaction
    control.

    Returns the (flushed) Event instance.
    """
    if action not in EVENT_ACTIONS:
        raise ValueError(f"Unknown event action: {action!r}")
    if subject.kind not in EVENT_SUBJECT_KINDS:
        raise ValueError(f"Events cannot have a {subject.kind!r} subject")

    event = Event(
        account_id=account_id,
        board_id=board_id,
        creator_id=creator_id,
        action=action,
        subject_type=subject.kind,
        subject_id=subject.id,
        particulars=dict(particulars or {}),
        created_at=created_at or utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    logger.debug("Event appended: %s", event,
                 extra={"account_id": account_id, "event_action": action})
    return event


def commit_and_dispatch(*events: Event) -> list[int]:
    """
    Commit the current transaction, then fan out the given events.

    Commit failure rolls back and re-raises; nothing is dispatched. Fan-out
    task failures are isolated inside the task queue.
    """
    event_ids = [event.id for event in events if event is not None]
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Commit failed; %d event(s) not dispatched", len(event_ids))
        raise

    dispatch_events(event_ids)
    return event_ids


def dispatch_events(event_ids) -> None:
    """Hand committed event ids to the fan-out tasks."""
    for event_id in event_ids:
        for task_name in FANOUT_TASKS:
            task_queue.enqueue(task_name, event_id)


# ── Queries ──────────────────────────────────────────────────────────────────

def get_event(account_id: int, event_id: int) -> Event:
    return get_scoped(Event, event_id, account_id=account_id)


def list_events(
    account_id: int,
    *,
    subject: SubjectRef | None = None,
    action: str | None = None,
    board_id: int | None = None,
    limit: int = 100,
) -> list[Event]:
    """Events for an account, oldest first, optionally narrowed."""
    stmt = select(Event).where(Event.account_id == account_id)
    if subject is not None:
        stmt = stmt.where(Event.subject_type == subject.kind, Event.subject_id == subject.id)
    if action:
        stmt = stmt.where(Event.action == action)
    if board_id is not None:
        stmt = stmt.where(Event.board_id == board_id)
    stmt = stmt.order_by(Event.created_at.asc(), Event.id.asc()).limit(limit)
    return list(db.session.execute(stmt).scalars())
