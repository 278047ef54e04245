"""Best-effort settlement notifications."""

import logging

import httpx
import pytest

from models import Notification
from services import notifications
from services.notifications import notify_settlement, send_webhook
from services.settlement import build_reviewer_settlement

from conftest import OCT_START, SEPT_START

WEBHOOK_URL = "https://hooks.example.com/settlements"


@pytest.fixture
def webhook(monkeypatch):
    """Route webhook posts through ``handler`` instead of the network."""
    real_client = httpx.Client
    sent = []

    def install(handler):
        def recording(request):
            sent.append(request)
            return handler(request)

        monkeypatch.setitem(notifications.NOTIFICATION_CONFIG, "webhook_url", WEBHOOK_URL)
        monkeypatch.setattr(
            notifications.httpx, "Client",
            lambda **kwargs: real_client(transport=httpx.MockTransport(recording), **kwargs),
        )
        return sent
    return install


def _settled_reviewer(db, make):
    reviewer = make.verifier()
    make.payout(reviewer, 3500, created_at=SEPT_START)
    settlement_id = build_reviewer_settlement(db, reviewer.id, SEPT_START, OCT_START)["settlement"]["id"]
    return reviewer, settlement_id


def test_webhook_disabled_without_url():
    assert send_webhook({"event": "settlement.created"}) is False


def test_notify_writes_row_and_posts(db, make, webhook):
    sent = webhook(lambda request: httpx.Response(204))
    reviewer, settlement_id = _settled_reviewer(db, make)

    assert notify_settlement(db, reviewer.id, settlement_id) is True
    notif = db.query(Notification).filter(Notification.user_id == reviewer.id).one()
    assert "Verification earnings" in notif.message
    assert notif.link == f"/settlements/{settlement_id}"
    assert len(sent) == 1
    assert str(sent[0].url) == WEBHOOK_URL


def test_webhook_failure_is_logged_not_raised(db, make, webhook, caplog):
    webhook(lambda request: httpx.Response(503))
    reviewer, settlement_id = _settled_reviewer(db, make)

    with caplog.at_level(logging.WARNING, logger="verimarket.notifications"):
        assert notify_settlement(db, reviewer.id, settlement_id) is True
    assert "Webhook delivery failed" in caplog.text
    assert db.query(Notification).count() == 1


def test_missing_settlement_is_not_an_error(db, make):
    reviewer = make.verifier()
    assert notify_settlement(db, reviewer.id, 4040) is False
    assert db.query(Notification).count() == 0
