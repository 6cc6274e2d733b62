"""
Card lifecycle tests.

Covers:
    - creation, numbering and publish
    - triage, send back, close, reopen, postpone, resume
    - board moves, title / due date changes, assignments
    - rejected transitions leave no event and no state change
"""

from datetime import date, timedelta

import pytest

from cardflow.core.exceptions import (
    AssignmentLimitExceeded,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from cardflow.models import as_utc, db
from cardflow.models.board import Access
from cardflow.models.card import Card
from cardflow.models.event import Event
from cardflow.models.subject import SubjectRef
from cardflow.services import card_lifecycle, directory, event_log


def _actions(account_id, card_id):
    return [e.action for e in event_log.list_events(account_id, subject=SubjectRef.card(card_id))]


# ═════════════════════════════════════════════════════════════════════════════
# Creation & publish
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateAndPublish:
    def test_new_card_is_drafted_and_silent(self, account, make_card):
        card = make_card(publish=False)
        assert card.state == "drafted"
        assert card.number == 1
        assert _actions(account.id, card.id) == []

    def test_numbers_increase_per_account(self, make_card):
        first = make_card("One", publish=False)
        second = make_card("Two", publish=False)
        assert (first.number, second.number) == (1, 2)

    def test_blank_title_rejected(self, account, board, alice):
        with pytest.raises(ValidationError):
            card_lifecycle.create_card(account.id, board.id, alice.id, "   ")

    def test_creator_watches_card(self, make_card, alice):
        card = make_card(publish=False)
        assert alice.id in directory.card_watcher_ids(card.id)

    def test_publish_moves_to_awaiting_triage(self, account, make_card):
        card = make_card()
        assert card.state == "awaiting_triage"
        assert _actions(account.id, card.id) == ["card_published"]

    def test_publish_twice_rejected(self, account, make_card, alice):
        card = make_card()
        with pytest.raises(InvalidTransition):
            card_lifecycle.publish(account.id, card.id, alice.id)
        assert _actions(account.id, card.id) == ["card_published"]

    def test_other_account_cannot_see_card(self, make_card):
        card = make_card()
        other = directory.create_account("Other")
        with pytest.raises(NotFoundError):
            card_lifecycle.get_card(other.id, card.id)


# ═════════════════════════════════════════════════════════════════════════════
# Triage
# ═════════════════════════════════════════════════════════════════════════════


class TestTriage:
    def test_triage_into_column(self, account, make_card, alice, doing):
        card = make_card()
        card = card_lifecycle.triage_into(account.id, card.id, doing.id, alice.id)
        assert card.state == "triaged"
        event = event_log.list_events(account.id, action="card_triaged")[0]
        assert event.particulars == {"column": "Doing", "column_id": doing.id}

    def test_triage_into_same_column_is_noop(self, account, make_card, alice, doing):
        card = make_card()
        card_lifecycle.triage_into(account.id, card.id, doing.id, alice.id)
        card_lifecycle.triage_into(account.id, card.id, doing.id, alice.id)
        assert _actions(account.id, card.id).count("card_triaged") == 1

    def test_triage_into_foreign_column_rejected(self, account, make_card, alice):
        other = directory.create_board(account.id, "Other", column_names=("Doing",))
        card = make_card()
        with pytest.raises(ValidationError):
            card_lifecycle.triage_into(account.id, card.id, other.columns[0].id, alice.id)

    def test_draft_cannot_be_triaged(self, account, make_card, alice, doing):
        card = make_card(publish=False)
        with pytest.raises(InvalidTransition):
            card_lifecycle.triage_into(account.id, card.id, doing.id, alice.id)

    def test_send_back_to_triage(self, account, make_card, alice, doing):
        card = make_card()
        card_lifecycle.triage_into(account.id, card.id, doing.id, alice.id)
        card = card_lifecycle.send_back_to_triage(account.id, card.id, alice.id)
        assert card.state == "awaiting_triage"
        assert card.column_id is None

    def test_send_back_requires_triaged(self, account, make_card, alice):
        card = make_card()
        with pytest.raises(InvalidTransition):
            card_lifecycle.send_back_to_triage(account.id, card.id, alice.id)

    def test_triage_resumes_postponed_card(self, account, make_card, alice, doing):
        card = make_card()
        card_lifecycle.postpone(account.id, card.id, alice.id)
        card = card_lifecycle.triage_into(account.id, card.id, doing.id, alice.id)
        assert card.state == "triaged"
        assert card.not_now is None


# ═════════════════════════════════════════════════════════════════════════════
# Close / reopen / postpone / resume
# ═════════════════════════════════════════════════════════════════════════════


class TestCloseAndPostpone:
    def test_close_and_reopen(self, account, make_card, alice):
        card = make_card()
        card = card_lifecycle.close(account.id, card.id, alice.id)
        assert card.state == "closed"
        assert card.closure.user_id == alice.id

        card = card_lifecycle.reopen(account.id, card.id, alice.id)
        assert card.state == "awaiting_triage"
        assert _actions(account.id, card.id) == ["card_published", "card_closed", "card_reopened"]

    def test_close_is_idempotent(self, account, make_card, alice):
        card = make_card()
        card_lifecycle.close(account.id, card.id, alice.id)
        card_lifecycle.close(account.id, card.id, alice.id)
        assert _actions(account.id, card.id).count("card_closed") == 1

    def test_draft_cannot_be_closed(self, account, make_card, alice):
        card = make_card(publish=False)
        with pytest.raises(InvalidTransition):
            card_lifecycle.close(account.id, card.id, alice.id)

    def test_reopen_open_card_rejected(self, account, make_card, alice):
        card = make_card()
        with pytest.raises(InvalidTransition):
            card_lifecycle.reopen(account.id, card.id, alice.id)

    def test_postpone_closed_card_absorbs_closure(self, account, make_card, alice):
        card = make_card()
        card_lifecycle.close(account.id, card.id, alice.id)
        card = card_lifecycle.postpone(account.id, card.id, alice.id)

        assert card.state == "not_now"
        assert card.closure is None
        actions = _actions(account.id, card.id)
        assert actions.count("card_postponed") == 1
        assert "card_reopened" not in actions

    def test_close_postponed_card_drops_not_now(self, account, make_card, alice):
        card = make_card()
        card_lifecycle.postpone(account.id, card.id, alice.id)
        card = card_lifecycle.close(account.id, card.id, alice.id)
        assert card.state == "closed"
        assert card.not_now is None

    def test_postpone_twice_rejected(self, account, make_card, alice):
        card = make_card()
        card_lifecycle.postpone(account.id, card.id, alice.id)
        with pytest.raises(InvalidTransition):
            card_lifecycle.postpone(account.id, card.id, alice.id)

    def test_postpone_clears_column(self, account, make_card, alice, doing):
        card = make_card()
        card_lifecycle.triage_into(account.id, card.id, doing.id, alice.id)
        card = card_lifecycle.postpone(account.id, card.id, alice.id)
        assert card.column_id is None

    def test_resume(self, account, make_card, alice):
        card = make_card()
        card_lifecycle.postpone(account.id, card.id, alice.id)
        card = card_lifecycle.resume(account.id, card.id, alice.id)
        assert card.state == "awaiting_triage"
        assert _actions(account.id, card.id)[-1] == "card_resumed"

    def test_resume_requires_postponed(self, account, make_card, alice):
        card = make_card()
        with pytest.raises(InvalidTransition):
            card_lifecycle.resume(account.id, card.id, alice.id)

    def test_system_postpone_is_auto_postpone(self, account, make_card):
        card = make_card()
        system = directory.system_user(account.id)
        db.session.commit()
        card_lifecycle.postpone(account.id, card.id, system.id)
        assert _actions(account.id, card.id)[-1] == "card_auto_postponed"


# ═════════════════════════════════════════════════════════════════════════════
# Edits & assignments
# ═════════════════════════════════════════════════════════════════════════════


class TestEdits:
    def test_change_title(self, account, make_card, alice):
        card = make_card("Old")
        card = card_lifecycle.change_title(account.id, card.id, "New", alice.id)
        assert card.title == "New"
        event = event_log.list_events(account.id, action="card_title_changed")[0]
        assert event.particulars == {"old_title": "Old", "new_title": "New"}

    def test_unchanged_title_records_nothing(self, account, make_card, alice):
        card = make_card("Same")
        card_lifecycle.change_title(account.id, card.id, "Same", alice.id)
        assert "card_title_changed" not in _actions(account.id, card.id)

    def test_change_due_date(self, account, make_card, alice):
        card = make_card()
        card = card_lifecycle.change_due_date(account.id, card.id, date(2030, 1, 15), alice.id)
        assert card.due_on == date(2030, 1, 15)
        event = event_log.list_events(account.id, action="card_due_date_changed")[0]
        assert event.particulars == {"old_due_on": None, "new_due_on": "2030-01-15"}

    def test_transition_touches_last_active_at(self, account, make_card, alice, t0):
        card = make_card(now=t0)
        later = t0 + timedelta(hours=3)
        card = card_lifecycle.change_title(account.id, card.id, "Renamed", alice.id, now=later)
        assert as_utc(card.last_active_at) == later

    def test_move_keeps_matching_column(self, account, make_card, alice, doing):
        target = directory.create_board(account.id, "Ops", column_names=("Later", "Doing"))
        card = make_card()
        card_lifecycle.triage_into(account.id, card.id, doing.id, alice.id)

        card = card_lifecycle.move_to_board(account.id, card.id, target.id, alice.id)
        assert card.board_id == target.id
        assert card.column_id == target.find_column_named("Doing").id
        event = event_log.list_events(account.id, action="card_board_changed")[0]
        assert event.particulars["old_board"] == "Product"
        assert event.particulars["new_board"] == "Ops"

    def test_move_without_matching_column_goes_to_triage(self, account, make_card, alice, doing):
        target = directory.create_board(account.id, "Ops", column_names=("Later",))
        card = make_card()
        card_lifecycle.triage_into(account.id, card.id, doing.id, alice.id)
        card = card_lifecycle.move_to_board(account.id, card.id, target.id, alice.id)
        assert card.state == "awaiting_triage"

    def test_move_needs_identical_column_name(self, account, make_card, alice, doing):
        target = directory.create_board(account.id, "Ops", column_names=("doing", " Doing"))
        card = make_card()
        card_lifecycle.triage_into(account.id, card.id, doing.id, alice.id)
        card = card_lifecycle.move_to_board(account.id, card.id, target.id, alice.id)
        assert card.column_id is None
        assert card.state == "awaiting_triage"

    def test_move_grants_assignees_access(self, account, make_card, alice, carol):
        target = directory.create_board(account.id, "Ops")
        card = make_card()
        card_lifecycle.assign(account.id, card.id, carol.id, alice.id)
        card_lifecycle.move_to_board(account.id, card.id, target.id, alice.id)
        access = Access.query.filter_by(board_id=target.id, user_id=carol.id).one()
        assert access.involvement == "access_only"

    def test_move_to_same_board_rejected(self, account, make_card, alice, board):
        card = make_card()
        with pytest.raises(InvalidTransition):
            card_lifecycle.move_to_board(account.id, card.id, board.id, alice.id)


class TestAssignments:
    def test_assign_records_full_assignee_set(self, account, make_card, alice, bob, carol):
        card = make_card()
        card_lifecycle.assign(account.id, card.id, bob.id, alice.id)
        card = card_lifecycle.assign(account.id, card.id, carol.id, alice.id)

        assert card.assignee_ids == sorted([bob.id, carol.id])
        last = event_log.list_events(account.id, action="card_assigned")[-1]
        assert last.particulars == {"assignee_id": carol.id,
                                    "assignee_ids": sorted([bob.id, carol.id])}
        assert carol.id in directory.card_watcher_ids(card.id)

    def test_assign_twice_rejected(self, account, make_card, alice, bob):
        card = make_card()
        card_lifecycle.assign(account.id, card.id, bob.id, alice.id)
        with pytest.raises(InvalidTransition):
            card_lifecycle.assign(account.id, card.id, bob.id, alice.id)

    def test_assignment_limit(self, account, make_card, alice, monkeypatch):
        monkeypatch.setattr(card_lifecycle, "ASSIGNMENT_LIMIT", 2)
        card = make_card()
        users = [directory.create_user(account.id, f"User {i}") for i in range(3)]
        card_lifecycle.assign(account.id, card.id, users[0].id, alice.id)
        card_lifecycle.assign(account.id, card.id, users[1].id, alice.id)
        with pytest.raises(AssignmentLimitExceeded):
            card_lifecycle.assign(account.id, card.id, users[2].id, alice.id)
        assert len(db.session.get(Card, card.id).assignments) == 2

    def test_hundred_and_first_assignee_rejected(self, account, make_card, alice):
        card = make_card()
        users = [directory.create_user(account.id, f"User {i}") for i in range(101)]
        for user in users[:100]:
            card_lifecycle.assign(account.id, card.id, user.id, alice.id)
        assigned_events = Event.query.filter_by(action="card_assigned").count()

        with pytest.raises(AssignmentLimitExceeded):
            card_lifecycle.assign(account.id, card.id, users[100].id, alice.id)

        card = db.session.get(Card, card.id)
        assert len(card.assignments) == 100
        assert users[100].id not in card.assignee_ids
        assert Event.query.filter_by(action="card_assigned").count() == assigned_events == 100

    def test_unassign(self, account, make_card, alice, bob):
        card = make_card()
        card_lifecycle.assign(account.id, card.id, bob.id, alice.id)
        card = card_lifecycle.unassign(account.id, card.id, bob.id, alice.id)
        assert card.assignee_ids == []
        assert _actions(account.id, card.id)[-1] == "card_unassigned"

    def test_unassign_unknown_rejected(self, account, make_card, alice, bob):
        card = make_card()
        with pytest.raises(InvalidTransition):
            card_lifecycle.unassign(account.id, card.id, bob.id, alice.id)


class TestMarkers:
    def test_gild_and_ungild_emit_no_events(self, account, make_card, alice):
        card = make_card()
        card = card_lifecycle.gild(account.id, card.id, alice.id)
        assert card.is_golden
        card = card_lifecycle.ungild(account.id, card.id, alice.id)
        assert not card.is_golden
        assert _actions(account.id, card.id) == ["card_published"]

    def test_assign_registers_activity_spike(self, account, make_card, alice, bob):
        card = make_card()
        card = card_lifecycle.assign(account.id, card.id, bob.id, alice.id)
        assert card.activity_spike is not None

    def test_rejected_transition_appends_no_event(self, account, make_card, alice):
        card = make_card()
        before = Event.query.count()
        with pytest.raises(InvalidTransition):
            card_lifecycle.resume(account.id, card.id, alice.id)
        assert Event.query.count() == before
