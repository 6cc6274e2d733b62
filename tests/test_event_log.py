"""
Event log tests: append-only storage, fan-out after commit, query helpers.
"""

from unittest.mock import patch

import pytest

from cardflow.core.exceptions import NotFoundError
from cardflow.models import db
from cardflow.models.event import Event
from cardflow.models.subject import SubjectRef
from cardflow.services import directory, event_log


def test_append_event_flushes_without_commit(account, board, alice, make_card):
    card = make_card(publish=False)
    event = event_log.append_event(
        account_id=account.id, board_id=board.id, creator_id=alice.id,
        action="card_published", subject=SubjectRef.card(card.id),
    )
    assert event.id is not None
    db.session.rollback()
    assert db.session.get(Event, event.id) is None


def test_unknown_action_rejected(account, board, alice, make_card):
    card = make_card(publish=False)
    with pytest.raises(ValueError):
        event_log.append_event(
            account_id=account.id, board_id=board.id, creator_id=alice.id,
            action="card_exploded", subject=SubjectRef.card(card.id),
        )


def test_mention_cannot_be_event_subject(account, board, alice):
    with pytest.raises(ValueError):
        event_log.append_event(
            account_id=account.id, board_id=board.id, creator_id=alice.id,
            action="card_published", subject=SubjectRef.mention(1),
        )


def test_events_cannot_be_updated(make_card):
    make_card()
    event = Event.query.one()
    event.action = "card_closed"
    with pytest.raises(RuntimeError):
        db.session.commit()
    db.session.rollback()


def test_events_cannot_be_deleted(make_card):
    make_card()
    db.session.delete(Event.query.one())
    with pytest.raises(RuntimeError):
        db.session.commit()
    db.session.rollback()


def test_commit_then_dispatch_both_fanout_tasks(account, board, alice, make_card):
    card = make_card(publish=False)
    event = event_log.append_event(
        account_id=account.id, board_id=board.id, creator_id=alice.id,
        action="card_published", subject=SubjectRef.card(card.id),
    )
    with patch("cardflow.services.event_log.task_queue") as queue:
        ids = event_log.commit_and_dispatch(event)

    assert ids == [event.id]
    enqueued = [c.args for c in queue.enqueue.call_args_list]
    assert enqueued == [("route_event_notifications", event.id),
                        ("dispatch_event_webhooks", event.id)]


def test_commit_failure_dispatches_nothing(account, board, alice, make_card):
    card = make_card(publish=False)
    event = event_log.append_event(
        account_id=account.id, board_id=board.id, creator_id=alice.id,
        action="card_published", subject=SubjectRef.card(card.id),
    )
    with patch("cardflow.services.event_log.task_queue") as queue, \
            patch.object(db.session, "commit", side_effect=RuntimeError("disk full")):
        with pytest.raises(RuntimeError):
            event_log.commit_and_dispatch(event)
    queue.enqueue.assert_not_called()


def test_list_events_filters(account, make_card, alice):
    first = make_card("First")
    second = make_card("Second")

    all_published = event_log.list_events(account.id, action="card_published")
    assert [e.subject_id for e in all_published] == [first.id, second.id]

    only_first = event_log.list_events(account.id, subject=SubjectRef.card(first.id))
    assert [e.action for e in only_first] == ["card_published"]
    assert only_first[0].creator_id == alice.id


def test_get_event_is_account_scoped(make_card):
    make_card()
    event = Event.query.one()
    other = directory.create_account("Other")
    with pytest.raises(NotFoundError):
        event_log.get_event(other.id, event.id)
