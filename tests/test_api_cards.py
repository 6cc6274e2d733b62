"""
Cards API tests: creation, lifecycle endpoints, collaboration and the
error envelope.
"""

from datetime import datetime, timedelta, timezone

import pytest

from cardflow.services import card_lifecycle, directory


def _headers(account, user=None):
    headers = {"X-Account-ID": str(account.id)}
    if user is not None:
        headers["X-User-ID"] = str(user.id)
    return headers


@pytest.fixture()
def as_alice(account, alice):
    return _headers(account, alice)


def _create(client, headers, board, **extra):
    res = client.post("/api/v1/cards", json={"title": "Fix login", "board_id": board.id, **extra},
                      headers=headers)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════════
# Create & read
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateCard:
    def test_create_returns_drafted_card(self, client, as_alice, board):
        card = _create(client, as_alice, board, due_on="2026-12-01")
        assert card["state"] == "drafted"
        assert card["number"] == 1
        assert card["due_on"] == "2026-12-01"
        assert card["auto_postpone_at"] is None

    def test_missing_headers_rejected(self, client, board):
        res = client.post("/api/v1/cards", json={"title": "x", "board_id": board.id})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_non_integer_header_rejected(self, client, board):
        res = client.post("/api/v1/cards", json={"title": "x", "board_id": board.id},
                          headers={"X-Account-ID": "acme", "X-User-ID": "1"})
        assert res.status_code == 400

    @pytest.mark.parametrize("body", [
        {"board_id": 1},
        {"title": "   ", "board_id": 1},
        {"title": "ok"},
        {"title": "ok", "board_id": "1"},
        {"title": "ok", "board_id": 1, "due_on": "tomorrow"},
    ])
    def test_invalid_body(self, client, as_alice, board, body):
        res = client.post("/api/v1/cards", json=body, headers=as_alice)
        assert res.status_code == 400

    def test_unknown_board_is_404(self, client, as_alice):
        res = client.post("/api/v1/cards", json={"title": "x", "board_id": 9999},
                          headers=as_alice)
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_create_with_mentions(self, client, as_alice, board, carol):
        card = _create(client, as_alice, board, mentionee_ids=[carol.id])
        res = client.post(f"/api/v1/cards/{card['id']}/publish", headers=as_alice)
        assert res.status_code == 200

        res = client.get("/api/v1/notifications", headers={"X-Account-ID": str(card["account_id"]),
                                                           "X-User-ID": str(carol.id)})
        assert [n["source"]["type"] for n in res.get_json()["items"]] == ["mention"]

    def test_get_card(self, client, as_alice, make_card):
        card = make_card()
        res = client.get(f"/api/v1/cards/{card.id}", headers=as_alice)
        assert res.status_code == 200
        body = res.get_json()
        assert body["state"] == "awaiting_triage"
        assert body["auto_postpone_at"] is not None

    def test_card_of_other_account_is_404(self, client, make_card):
        card = make_card()
        other = directory.create_account("Other")
        res = client.get(f"/api/v1/cards/{card.id}", headers={"X-Account-ID": str(other.id)})
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle operations
# ═════════════════════════════════════════════════════════════════════════════


class TestOperations:
    def test_publish_then_triage(self, client, as_alice, board, doing):
        card = _create(client, as_alice, board)

        res = client.post(f"/api/v1/cards/{card['id']}/publish", headers=as_alice)
        assert res.get_json()["state"] == "awaiting_triage"

        res = client.post(f"/api/v1/cards/{card['id']}/triage", json={"column_id": doing.id},
                          headers=as_alice)
        assert res.status_code == 200
        assert res.get_json()["column_id"] == doing.id

    def test_illegal_transition_is_409(self, client, as_alice, make_card):
        card = make_card()
        res = client.post(f"/api/v1/cards/{card.id}/publish", headers=as_alice)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"] == {"action": "publish", "state": "awaiting_triage"}

    def test_close_postpone_resume(self, client, as_alice, make_card):
        card = make_card()
        res = client.post(f"/api/v1/cards/{card.id}/close", headers=as_alice)
        assert res.get_json()["state"] == "closed"
        assert res.get_json()["auto_postpone_at"] is None

        res = client.post(f"/api/v1/cards/{card.id}/postpone", headers=as_alice)
        assert res.get_json()["state"] == "not_now"
        assert res.get_json()["closure"] is None

        res = client.post(f"/api/v1/cards/{card.id}/resume", headers=as_alice)
        assert res.get_json()["state"] == "awaiting_triage"

    def test_title_due_date_and_gild(self, client, as_alice, make_card):
        card = make_card()
        res = client.post(f"/api/v1/cards/{card.id}/title", json={"title": "Fix logout"},
                          headers=as_alice)
        assert res.get_json()["title"] == "Fix logout"

        res = client.post(f"/api/v1/cards/{card.id}/due_date", json={"due_on": None},
                          headers=as_alice)
        assert res.get_json()["due_on"] is None

        res = client.post(f"/api/v1/cards/{card.id}/gild", headers=as_alice)
        assert res.get_json()["golden"] is True

    def test_move_between_boards(self, client, as_alice, account, alice, make_card):
        other = directory.create_board(account.id, "Ops", creator_id=alice.id)
        card = make_card()
        res = client.post(f"/api/v1/cards/{card.id}/move", json={"board_id": other.id},
                          headers=as_alice)
        assert res.status_code == 200
        assert res.get_json()["board_id"] == other.id

    def test_assignment_limit_is_422(self, client, as_alice, bob, carol, make_card,
                                     monkeypatch):
        monkeypatch.setattr(card_lifecycle, "ASSIGNMENT_LIMIT", 1)
        card = make_card()
        res = client.post(f"/api/v1/cards/{card.id}/assign", json={"assignee_id": bob.id},
                          headers=as_alice)
        assert res.get_json()["assignee_ids"] == [bob.id]

        res = client.post(f"/api/v1/cards/{card.id}/assign", json={"assignee_id": carol.id},
                          headers=as_alice)
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"

    def test_missing_operation_argument_is_400(self, client, as_alice, make_card):
        card = make_card()
        res = client.post(f"/api/v1/cards/{card.id}/triage", json={}, headers=as_alice)
        assert res.status_code == 400

    def test_unknown_operation_is_404(self, client, as_alice, make_card):
        card = make_card()
        res = client.post(f"/api/v1/cards/{card.id}/explode", headers=as_alice)
        assert res.status_code == 404
        assert "publish" in res.get_json()["operations"]

    def test_actor_must_belong_to_account(self, client, account, make_card):
        card = make_card()
        stranger = directory.create_user(directory.create_account("Other").id, "Mallory")
        res = client.post(f"/api/v1/cards/{card.id}/close",
                          headers={"X-Account-ID": str(account.id),
                                   "X-User-ID": str(stranger.id)})
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# History, collaboration, entropy
# ═════════════════════════════════════════════════════════════════════════════


class TestCollaboration:
    def test_events_history(self, client, as_alice, make_card):
        card = make_card()
        client.post(f"/api/v1/cards/{card.id}/close", headers=as_alice)

        res = client.get(f"/api/v1/cards/{card.id}/events", headers=as_alice)
        assert [e["action"] for e in res.get_json()["items"]] == ["card_published", "card_closed"]

        res = client.get(f"/api/v1/cards/{card.id}/events?action=card_closed", headers=as_alice)
        assert res.get_json()["total"] == 1

        res = client.get(f"/api/v1/cards/{card.id}/events?action=nope", headers=as_alice)
        assert res.status_code == 400

    def test_comment(self, client, account, bob, make_card):
        card = make_card()
        res = client.post(f"/api/v1/cards/{card.id}/comments", json={"body_ref": "rt-1"},
                          headers=_headers(account, bob))
        assert res.status_code == 201
        assert res.get_json()["card_id"] == card.id

    def test_comment_on_draft_is_409(self, client, as_alice, make_card):
        card = make_card(publish=False)
        res = client.post(f"/api/v1/cards/{card.id}/comments", json={}, headers=as_alice)
        assert res.status_code == 409

    def test_mentions_require_list(self, client, as_alice, make_card):
        card = make_card()
        res = client.post(f"/api/v1/cards/{card.id}/mentions", json={"mentionee_ids": 3},
                          headers=as_alice)
        assert res.status_code == 400

    def test_watch_and_unwatch(self, client, account, carol, make_card):
        card = make_card()
        res = client.post(f"/api/v1/cards/{card.id}/watch", headers=_headers(account, carol))
        assert res.get_json() == {"card_id": card.id, "watching": True}
        assert carol.id in directory.card_watcher_ids(card.id)

        res = client.delete(f"/api/v1/cards/{card.id}/watch", headers=_headers(account, carol))
        assert res.get_json()["watching"] is False
        assert carol.id not in directory.card_watcher_ids(card.id)

    def test_postponing_soon(self, client, as_alice, make_card):
        idle_since = datetime.now(timezone.utc) - timedelta(days=25)
        soon = make_card("Idle", now=idle_since)
        make_card("Busy")

        res = client.get("/api/v1/cards/postponing-soon", headers=as_alice)

        assert [c["id"] for c in res.get_json()["items"]] == [soon.id]


def test_health(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


def test_unknown_route_is_json_404(client):
    res = client.get("/api/v1/nope")
    assert res.status_code == 404
    assert res.get_json()["path"] == "/api/v1/nope"
