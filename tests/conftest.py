"""
Shared pytest fixtures for the Cardflow Core test suite.

Provides:
    - app: Flask application (session-scoped, inline task queue)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - account / alice / bob / carol: account and members
    - board: board with "Doing" and "Done" columns, watched by alice and bob
    - make_card: factory for drafted or published cards
    - gateway_session: fake requests.Session installed on the webhook gateway
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from cardflow import create_app
from cardflow.integrations.webhook_gateway import webhook_gateway
from cardflow.models import db as _db
from cardflow.services import card_lifecycle, directory


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Directory fixtures ───────────────────────────────────────────────────


@pytest.fixture()
def account():
    return directory.create_account("Acme")


@pytest.fixture()
def alice(account):
    return directory.create_user(account.id, "Alice", email="alice@example.com")


@pytest.fixture()
def bob(account):
    return directory.create_user(account.id, "Bob", email="bob@example.com")


@pytest.fixture()
def carol(account):
    return directory.create_user(account.id, "Carol", email="carol@example.com")


@pytest.fixture()
def board(account, alice, bob):
    board = directory.create_board(account.id, "Product", creator_id=alice.id,
                                   column_names=("Doing", "Done"))
    directory.grant_board_access(account.id, board.id, bob.id, involvement="watching")
    _db.session.commit()
    return board


@pytest.fixture()
def doing(board):
    return board.find_column_named("Doing")


@pytest.fixture()
def make_card(account, board, alice):
    """Factory: ``make_card(title, publish=True, creator=alice, now=None)``."""

    def _make(title="Fix login", *, publish=True, creator=None, now=None):
        creator = creator or alice
        card = card_lifecycle.create_card(account.id, board.id, creator.id, title, now=now)
        if publish:
            card = card_lifecycle.publish(account.id, card.id, creator.id, now=now)
        return card

    return _make


# ── Time helpers ─────────────────────────────────────────────────────────


@pytest.fixture()
def t0():
    """A fixed, recent reference instant."""
    now = datetime.now(timezone.utc).replace(microsecond=0)
    return now - timedelta(days=1)


# ── Outbound HTTP ────────────────────────────────────────────────────────


def fake_response(status_code=200, body=b'{"ok":true}', headers=None, chunk_size=8192):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {"Content-Type": "application/json"}
    response.encoding = "utf-8"
    chunks = [body[i:i + chunk_size] for i in range(0, len(body), chunk_size)]
    response.iter_content.side_effect = lambda chunk_size=None: iter(chunks)
    return response


@pytest.fixture()
def gateway_session():
    """Install a fake session on the gateway; DNS resolves to a public address."""
    fake = MagicMock()
    fake.post.return_value = fake_response()
    with patch.object(webhook_gateway, "_session", fake), \
            patch.object(webhook_gateway, "resolve", return_value=["93.184.216.34"]):
        yield fake


@pytest.fixture()
def response_factory():
    return fake_response
