"""
Monthly Settlement Batch
══════════════════════════════════════════════════
Settles the previous calendar month for every seller with sales and every
reviewer / expert with pending payouts.

Each owner is one unit of work: it commits or rolls back on its own, and a
failing unit is recorded in the report without stopping the run. Re-running
over the same period skips owners that already have a settlement, so the
number of settlements never grows on a second pass.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from database import utcnow
from errors import IdempotencySkip, ValidationError
from models import ExpertPayout, Order, OrderStatus, OwnerType, PayoutStatus, Product, ReviewerPayout
from schemas import BatchReport, CohortReport, UnitOutcome
from services.earnings import month_bounds
from services.notifications import notify_settlement
from services.settlement import build_reviewer_settlement, calculate_settlement

logger = logging.getLogger("verimarket.settlement_batch")


# ═══════════════════════════════════════════════
#  PERIODS
# ═══════════════════════════════════════════════

def previous_month_period(now: Optional[datetime] = None):
    """[first day of previous month, first day of this month)"""
    now = now or utcnow()
    current_start = datetime(now.year, now.month, 1)
    if now.month == 1:
        previous_start = datetime(now.year - 1, 12, 1)
    else:
        previous_start = datetime(now.year, now.month - 1, 1)
    return previous_start, current_start


def parse_period(period: str):
    """'YYYY-MM' → half-open month bounds."""
    try:
        month_start = datetime.strptime(period, "%Y-%m")
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid period '{period}', expected YYYY-MM")
    return month_bounds(month_start)


# ═══════════════════════════════════════════════
#  COHORTS
# ═══════════════════════════════════════════════

def find_sellers_with_sales(db: Session, period_start: datetime, period_end: datetime) -> list:
    rows = db.query(Product.seller_id).join(Order, Order.product_id == Product.id).filter(
        Order.status == OrderStatus.PAID,
        Order.paid_at >= period_start,
        Order.paid_at < period_end,
    ).distinct().all()
    return sorted(r[0] for r in rows)


def find_reviewers_with_pending_payouts(db: Session, period_start: datetime, period_end: datetime) -> list:
    reviewer_ids = db.query(ReviewerPayout.reviewer_id).filter(
        ReviewerPayout.status == PayoutStatus.PENDING,
        ReviewerPayout.created_at >= period_start,
        ReviewerPayout.created_at < period_end,
    ).distinct().all()
    expert_ids = db.query(ExpertPayout.expert_id).filter(
        ExpertPayout.status == PayoutStatus.PENDING,
        ExpertPayout.created_at >= period_start,
        ExpertPayout.created_at < period_end,
    ).distinct().all()
    return sorted({r[0] for r in reviewer_ids} | {r[0] for r in expert_ids})


# ═══════════════════════════════════════════════
#  UNITS
# ═══════════════════════════════════════════════

BUILDERS = {
    OwnerType.SELLER: calculate_settlement,
    OwnerType.REVIEWER: build_reviewer_settlement,
}


def _settle_owner(db: Session, owner_type: OwnerType, owner_id: int,
                  period_start: datetime, period_end: datetime, notifier) -> UnitOutcome:
    try:
        result = BUILDERS[owner_type](db, owner_id, period_start, period_end)
    except IdempotencySkip as exc:
        logger.info(f"Skipping {owner_type.value.lower()} {owner_id}: {exc.message}")
        return UnitOutcome(owner_type=owner_type, owner_id=owner_id, status="skipped", settlement_id=exc.existing_id)
    except Exception as exc:
        db.rollback()
        logger.error(f"Settlement failed for {owner_type.value.lower()} {owner_id}: {exc}")
        return UnitOutcome(owner_type=owner_type, owner_id=owner_id, status="failed", error=str(exc))

    settlement_id = result["settlement"]["id"]
    logger.info(
        f"Created settlement {settlement_id} for {owner_type.value.lower()} {owner_id}: "
        f"payout={result['settlement']['payout_amount']}"
    )
    if notifier is not None:
        try:
            notifier(db, owner_id, settlement_id)
        except Exception as exc:
            logger.warning(f"Notification failed for settlement {settlement_id}: {exc}")
    return UnitOutcome(owner_type=owner_type, owner_id=owner_id, status="created", settlement_id=settlement_id)


def _run_cohort(db: Session, owner_type: OwnerType, owner_ids: list,
                period_start: datetime, period_end: datetime, notifier) -> CohortReport:
    report = CohortReport()
    for owner_id in owner_ids:
        report.record(_settle_owner(db, owner_type, owner_id, period_start, period_end, notifier))
    return report


# ═══════════════════════════════════════════════
#  ENTRY POINTS
# ═══════════════════════════════════════════════

def run_monthly_settlement(db: Session, now: Optional[datetime] = None, notifier=notify_settlement) -> BatchReport:
    period_start, period_end = previous_month_period(now)
    logger.info(f"Monthly settlement for {period_start:%Y-%m-%d} to {period_end:%Y-%m-%d}")

    sellers = find_sellers_with_sales(db, period_start, period_end)
    reviewers = find_reviewers_with_pending_payouts(db, period_start, period_end)
    logger.info(f"Found {len(sellers)} seller(s) with sales and {len(reviewers)} reviewer(s) with pending payouts")

    report = BatchReport(
        period_start=period_start,
        period_end=period_end,
        sellers=_run_cohort(db, OwnerType.SELLER, sellers, period_start, period_end, notifier),
        reviewers=_run_cohort(db, OwnerType.REVIEWER, reviewers, period_start, period_end, notifier),
    )

    for label, cohort in (("Sellers", report.sellers), ("Reviewers", report.reviewers)):
        logger.info(f"{label}: {cohort.successful} created, {cohort.skipped} skipped, {cohort.failed} failed")
        for outcome in cohort.errors:
            logger.error(f"  {outcome.owner_type.value.lower()} {outcome.owner_id}: {outcome.error}")
    return report


def run_settlement_for_owner(db: Session, owner_id: int, owner_type: OwnerType = OwnerType.SELLER,
                             period=None, notifier=notify_settlement) -> UnitOutcome:
    """Manual single-owner run. ``period`` is 'YYYY-MM', a (start, end) pair, or None for last month."""
    if period is None:
        period_start, period_end = previous_month_period()
    elif isinstance(period, str):
        period_start, period_end = parse_period(period)
    else:
        period_start, period_end = period
    return _settle_owner(db, OwnerType(owner_type), owner_id, period_start, period_end, notifier)
