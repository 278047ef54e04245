"""Monthly batch: cohorts, idempotent re-runs and failure isolation."""

from datetime import datetime, timedelta

import pytest

import monthly_settlement
from errors import ValidationError
from models import Notification, OwnerType, Settlement
from services import settlement_batch
from services.settlement import calculate_settlement
from services.settlement_batch import (
    find_reviewers_with_pending_payouts, find_sellers_with_sales, parse_period,
    previous_month_period, run_monthly_settlement, run_settlement_for_owner,
)

from conftest import OCT_START, SEPT_START

RUN_AT = datetime(2026, 10, 1, 2, 0)


def _sales(make, count=2):
    sellers = []
    for _ in range(count):
        seller = make.seller()
        product = make.product(seller)
        make.order(product, 10000, 1000, paid_at=SEPT_START + timedelta(days=2))
        sellers.append(seller)
    return sellers


def test_previous_month_period():
    assert previous_month_period(datetime(2026, 10, 18)) == (SEPT_START, OCT_START)


def test_previous_month_period_in_january():
    assert previous_month_period(datetime(2027, 1, 1)) == (datetime(2026, 12, 1), datetime(2027, 1, 1))


def test_parse_period():
    assert parse_period("2026-12") == (datetime(2026, 12, 1), datetime(2027, 1, 1))
    with pytest.raises(ValidationError):
        parse_period("Sept 2026")


def test_cohorts(db, make):
    sellers = _sales(make)
    reviewer = make.verifier()
    make.payout(reviewer, 3500, created_at=datetime(2026, 9, 9))
    make.payout(make.verifier(), 3500, created_at=datetime(2026, 10, 9))

    assert find_sellers_with_sales(db, SEPT_START, OCT_START) == [s.id for s in sellers]
    assert find_reviewers_with_pending_payouts(db, SEPT_START, OCT_START) == [reviewer.id]


def test_batch_rerun_is_idempotent(db, make):
    _sales(make)
    reviewer = make.verifier()
    make.payout(reviewer, 3500, created_at=datetime(2026, 9, 9))

    first = run_monthly_settlement(db, now=RUN_AT, notifier=None)
    assert first.sellers.successful == 2
    assert first.reviewers.successful == 1
    assert first.total_created == 3
    count = db.query(Settlement).count()

    second = run_monthly_settlement(db, now=RUN_AT, notifier=None)
    assert second.total_created == 0
    assert second.sellers.skipped == 2
    assert db.query(Settlement).count() == count


def test_failing_unit_does_not_stop_run(db, make, monkeypatch):
    good, bad = _sales(make)

    def flaky(db, owner_id, period_start, period_end):
        if owner_id == bad.id:
            raise RuntimeError("payment account missing")
        return calculate_settlement(db, owner_id, period_start, period_end)

    monkeypatch.setitem(settlement_batch.BUILDERS, OwnerType.SELLER, flaky)
    report = run_monthly_settlement(db, now=RUN_AT, notifier=None)

    assert report.sellers.successful == 1
    assert report.sellers.failed == 1
    assert report.sellers.errors[0].owner_id == bad.id
    assert "payment account missing" in report.sellers.errors[0].error
    assert [s.owner_id for s in db.query(Settlement).all()] == [good.id]


def test_default_notifier_writes_notification(db, make):
    seller, = _sales(make, count=1)
    run_monthly_settlement(db, now=RUN_AT)

    notif = db.query(Notification).filter(Notification.user_id == seller.id).one()
    assert notif.notification_type == "settlement"
    assert "September 2026" in notif.message


def test_notifier_failure_does_not_fail_unit(db, make):
    _sales(make, count=1)

    def broken(db, owner_id, settlement_id):
        raise RuntimeError("webhook down")

    report = run_monthly_settlement(db, now=RUN_AT, notifier=broken)
    assert report.sellers.successful == 1
    assert report.total_failed == 0


def test_run_for_single_owner(db, make):
    reviewer = make.verifier()
    make.payout(reviewer, 3500, created_at=datetime(2026, 9, 9))

    outcome = run_settlement_for_owner(db, reviewer.id, OwnerType.REVIEWER, "2026-09", notifier=None)
    assert outcome.status == "created"
    again = run_settlement_for_owner(db, reviewer.id, OwnerType.REVIEWER, "2026-09", notifier=None)
    assert again.status == "skipped"
    assert again.settlement_id == outcome.settlement_id


def test_single_owner_with_nothing_to_settle_fails(db, make):
    reviewer = make.verifier()
    outcome = run_settlement_for_owner(db, reviewer.id, OwnerType.REVIEWER, "2026-09", notifier=None)
    assert outcome.status == "failed"
    assert db.query(Settlement).count() == 0


# ═══════════════════════════════════════════════
#  CLI
# ═══════════════════════════════════════════════

@pytest.fixture
def cli_db(monkeypatch, engine, session_factory):
    monkeypatch.setattr(monthly_settlement, "engine", engine)
    monkeypatch.setattr(monthly_settlement, "SessionLocal", session_factory)


def test_cli_single_owner(cli_db, db, make):
    seller, = _sales(make, count=1)
    assert monthly_settlement.main([str(seller.id), "--period", "2026-09"]) == 0
    assert db.query(Settlement).filter(Settlement.owner_id == seller.id).count() == 1


def test_cli_period_requires_owner(cli_db):
    assert monthly_settlement.main(["--period", "2026-09"]) == 1


def test_cli_bad_period(cli_db, make):
    seller = make.seller()
    assert monthly_settlement.main([str(seller.id), "--period", "09/2026"]) == 1
