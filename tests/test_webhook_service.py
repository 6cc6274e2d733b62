"""
Webhook management service tests: validation, CRUD, secrets, deliveries.
"""

import pytest

from cardflow.models.webhook import WebhookDelivery
from cardflow.services import directory, webhook_service

VALID = {"url": "https://example.com/hook", "subscribed_actions": ["card_published"]}


@pytest.fixture()
def webhook(account, board):
    result, err = webhook_service.create_webhook(account.id, board.id, dict(VALID, name="CI"))
    assert err is None
    return result


class TestCreate:
    def test_secret_returned_on_create_only(self, account, webhook):
        assert len(webhook["signing_secret"]) == 64
        detail, _ = webhook_service.get_webhook(account.id, webhook["id"])
        assert "signing_secret" not in detail
        assert detail["delinquency"]["consecutive_failures_count"] == 0

    def test_duplicate_actions_collapsed(self, account, board):
        result, _ = webhook_service.create_webhook(account.id, board.id, {
            "url": "https://example.com/x",
            "subscribed_actions": ["card_closed", "card_closed", "card_published"],
        })
        assert result["subscribed_actions"] == ["card_closed", "card_published"]

    @pytest.mark.parametrize("data", [
        {"subscribed_actions": ["card_published"]},
        {"url": "ftp://example.com", "subscribed_actions": ["card_published"]},
        {"url": "not a url", "subscribed_actions": ["card_published"]},
        {"url": "https://example.com"},
        {"url": "https://example.com", "subscribed_actions": []},
        {"url": "https://example.com", "subscribed_actions": "card_published"},
        {"url": "https://example.com", "subscribed_actions": ["card_exploded"]},
    ])
    def test_invalid_payloads_rejected(self, account, board, data):
        result, err = webhook_service.create_webhook(account.id, board.id, data)
        assert result is None
        assert err["status"] == 400

    def test_board_of_other_account_is_not_found(self, board):
        other = directory.create_account("Other")
        result, err = webhook_service.create_webhook(other.id, board.id, VALID)
        assert result is None
        assert err["status"] == 404


class TestManage:
    def test_update_is_partial(self, account, webhook):
        result, err = webhook_service.update_webhook(account.id, webhook["id"],
                                                     {"name": "  Renamed  "})
        assert err is None
        assert result["name"] == "Renamed"
        assert result["url"] == VALID["url"]

    def test_update_validates(self, account, webhook):
        _, err = webhook_service.update_webhook(account.id, webhook["id"], {"url": "gopher://x"})
        assert err["status"] == 400

    def test_other_account_cannot_see_webhook(self, webhook):
        other = directory.create_account("Other")
        result, err = webhook_service.get_webhook(other.id, webhook["id"])
        assert result is None
        assert err["status"] == 404
        assert webhook_service.delete_webhook(other.id, webhook["id"])["status"] == 404

    def test_delete(self, account, webhook):
        assert webhook_service.delete_webhook(account.id, webhook["id"]) is None
        _, err = webhook_service.get_webhook(account.id, webhook["id"])
        assert err["status"] == 404

    def test_deactivate_then_activate(self, account, webhook):
        paused, _ = webhook_service.deactivate_webhook(account.id, webhook["id"])
        assert paused["active"] is False
        resumed, _ = webhook_service.activate_webhook(account.id, webhook["id"])
        assert resumed["active"] is True

    def test_rotate_secret(self, account, webhook):
        rotated, err = webhook_service.rotate_secret(account.id, webhook["id"])
        assert err is None
        assert rotated["signing_secret"] != webhook["signing_secret"]

    def test_list_is_paginated(self, account, board, webhook):
        for i in range(3):
            webhook_service.create_webhook(account.id, board.id,
                                           dict(VALID, url=f"https://example.com/{i}"))
        page = webhook_service.list_webhooks(account.id, board.id, page=2, per_page=3)
        assert page["total"] == 4
        assert [w["url"] for w in page["items"]] == ["https://example.com/2"]


def test_list_deliveries(account, webhook, make_card, gateway_session):
    make_card()
    make_card("Second")

    result, err = webhook_service.list_deliveries(account.id, webhook["id"], per_page=1)

    assert err is None
    assert result["total"] == 2
    assert len(result["items"]) == 1
    assert result["items"][0]["state"] == "completed"
    assert WebhookDelivery.query.count() == 2
