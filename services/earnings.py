"""
Reviewer Earnings Ledger
══════════════════════════════════════════════════
Payout rows per approved verification (ReviewerPayout) or expert panel slot
(ExpertPayout), earnings queries, and derived reviewer statistics.

Payout recording flushes but does not commit: it always runs inside the
caller's approval transaction.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import utcnow
from errors import ValidationError
from models import (
    ExpertPayout, ExpertReview, ExpertReviewStatus, OwnerType, PayoutStatus,
    ReviewerPayout, ReviewerStats, Settlement, Verification, VerificationStatus,
)

logger = logging.getLogger("verimarket.earnings")

REVIEWED_STATUSES = (
    VerificationStatus.COMPLETED,
    VerificationStatus.APPROVED,
    VerificationStatus.REJECTED,
)


def month_bounds(now: datetime):
    start = datetime(now.year, now.month, 1)
    end = datetime(now.year + 1, 1, 1) if now.month == 12 else datetime(now.year, now.month + 1, 1)
    return start, end


def payout_to_dict(p) -> dict:
    is_expert = isinstance(p, ExpertPayout)
    return {
        "id": p.id,
        "kind": "expert_review" if is_expert else "verification",
        "owner_id": p.expert_id if is_expert else p.reviewer_id,
        "verification_id": p.expert_review.verification_id if is_expert else p.verification_id,
        "expert_review_id": p.expert_review_id if is_expert else None,
        "amount": p.amount,
        "status": p.status.value,
        "settlement_id": p.settlement_id,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


# ═══════════════════════════════════════════════
#  RECORDING
# ═══════════════════════════════════════════════

def record_earning(db: Session, verification_id: int, reviewer_id: int, amount: int) -> ReviewerPayout:
    """Idempotent: a second call for the same verification returns the existing row."""
    if amount is None or amount <= 0:
        raise ValidationError("Payout amount must be positive")

    existing = db.query(ReviewerPayout).filter(ReviewerPayout.verification_id == verification_id).first()
    if existing:
        return existing

    payout = ReviewerPayout(
        reviewer_id=reviewer_id,
        verification_id=verification_id,
        amount=amount,
        status=PayoutStatus.PENDING,
        created_at=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(payout)
    except IntegrityError:
        logger.info(f"Payout for verification {verification_id} recorded concurrently; reusing it")
        return db.query(ReviewerPayout).filter(ReviewerPayout.verification_id == verification_id).one()

    logger.info(f"Recorded payout of {amount} for reviewer {reviewer_id} (verification {verification_id})")
    return payout


def record_expert_earning(db: Session, expert_review_id: int, expert_id: int, amount: int) -> ExpertPayout:
    if amount is None or amount <= 0:
        raise ValidationError("Payout amount must be positive")

    existing = db.query(ExpertPayout).filter(ExpertPayout.expert_review_id == expert_review_id).first()
    if existing:
        return existing

    payout = ExpertPayout(
        expert_id=expert_id,
        expert_review_id=expert_review_id,
        amount=amount,
        status=PayoutStatus.PENDING,
        created_at=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(payout)
    except IntegrityError:
        logger.info(f"Payout for expert review {expert_review_id} recorded concurrently; reusing it")
        return db.query(ExpertPayout).filter(ExpertPayout.expert_review_id == expert_review_id).one()

    logger.info(f"Recorded expert payout of {amount} for expert {expert_id} (expert review {expert_review_id})")
    return payout


# ═══════════════════════════════════════════════
#  EARNINGS QUERIES
# ═══════════════════════════════════════════════

def _payouts(db: Session, reviewer_id: int, period_start=None, period_end=None, status=None) -> list:
    rq = db.query(ReviewerPayout).filter(ReviewerPayout.reviewer_id == reviewer_id)
    eq = db.query(ExpertPayout).filter(ExpertPayout.expert_id == reviewer_id)
    if period_start is not None:
        rq = rq.filter(ReviewerPayout.created_at >= period_start)
        eq = eq.filter(ExpertPayout.created_at >= period_start)
    if period_end is not None:
        rq = rq.filter(ReviewerPayout.created_at < period_end)
        eq = eq.filter(ExpertPayout.created_at < period_end)
    if status is not None:
        rq = rq.filter(ReviewerPayout.status == status)
        eq = eq.filter(ExpertPayout.status == status)
    rows = rq.all() + eq.all()
    rows.sort(key=lambda p: (p.created_at, p.id), reverse=True)
    return rows


def get_earnings(db: Session, reviewer_id: int, period_start: datetime, period_end: datetime) -> dict:
    """Payouts created in [period_start, period_end)."""
    payouts = _payouts(db, reviewer_id, period_start, period_end)
    return {
        "reviewer_id": reviewer_id,
        "period_start": period_start.isoformat(),
        "period_end": period_end.isoformat(),
        "payouts": [payout_to_dict(p) for p in payouts],
        "total": sum(p.amount for p in payouts),
        "count": len(payouts),
    }


def get_current_month_earnings(db: Session, reviewer_id: int, now: Optional[datetime] = None) -> dict:
    start, end = month_bounds(now or utcnow())
    return get_earnings(db, reviewer_id, start, end)


def get_earnings_breakdown(db: Session, reviewer_id: int, period_start=None, period_end=None) -> list:
    """Earnings grouped by verification level, ascending."""
    by_level = {}
    for p in _payouts(db, reviewer_id, period_start, period_end):
        if isinstance(p, ExpertPayout):
            level = p.expert_review.verification.level
        else:
            level = p.verification.level
        entry = by_level.setdefault(level, {"level": level, "count": 0, "earnings": 0})
        entry["count"] += 1
        entry["earnings"] += p.amount
    return [by_level[level] for level in sorted(by_level)]


def get_pending_payouts(db: Session, reviewer_id: int) -> dict:
    payouts = _payouts(db, reviewer_id, status=PayoutStatus.PENDING)
    return {
        "reviewer_id": reviewer_id,
        "payouts": [payout_to_dict(p) for p in payouts],
        "total": sum(p.amount for p in payouts),
        "count": len(payouts),
    }


# ═══════════════════════════════════════════════
#  STATS
# ═══════════════════════════════════════════════

def compute_stats(db: Session, reviewer_id: int) -> dict:
    """Pure function of the stored history."""
    verifications = db.query(Verification).filter(
        Verification.reviewer_id == reviewer_id,
        Verification.status.in_(REVIEWED_STATUSES),
    ).all()
    expert_reviews = db.query(ExpertReview).filter(
        ExpertReview.expert_id == reviewer_id,
        ExpertReview.status == ExpertReviewStatus.COMPLETED,
    ).all()

    total = len(verifications) + len(expert_reviews)
    approved = sum(1 for v in verifications if v.status == VerificationStatus.APPROVED)
    approved += sum(1 for er in expert_reviews if er.verification.status == VerificationStatus.APPROVED)

    scores = [v.score for v in verifications if v.score is not None]
    scores += [er.score for er in expert_reviews if er.score is not None]

    hours = [
        (row.completed_at - row.assigned_at).total_seconds() / 3600
        for row in list(verifications) + list(expert_reviews)
        if row.assigned_at and row.completed_at
    ]

    earnings = sum(p.amount for p in _payouts(db, reviewer_id))

    return {
        "reviewer_id": reviewer_id,
        "total_verifications": total,
        "total_earnings": earnings,
        "approval_rate": approved / total if total else 0.0,
        "average_score_given": sum(scores) / len(scores) if scores else 0.0,
        "average_review_time_hours": sum(hours) / len(hours) if hours else 0.0,
    }


def update_stats(db: Session, reviewer_id: int) -> dict:
    stats = compute_stats(db, reviewer_id)
    row = db.query(ReviewerStats).filter(ReviewerStats.reviewer_id == reviewer_id).first()
    if not row:
        row = ReviewerStats(reviewer_id=reviewer_id)
        db.add(row)
    row.total_verifications = stats["total_verifications"]
    row.total_earnings = stats["total_earnings"]
    row.approval_rate = stats["approval_rate"]
    row.average_score_given = stats["average_score_given"]
    row.average_review_time_hours = stats["average_review_time_hours"]
    row.updated_at = utcnow()
    db.commit()
    return stats


def get_stats(db: Session, reviewer_id: int) -> dict:
    row = db.query(ReviewerStats).filter(ReviewerStats.reviewer_id == reviewer_id).first()
    if not row:
        return {
            "reviewer_id": reviewer_id,
            "total_verifications": 0,
            "total_earnings": 0,
            "approval_rate": 0.0,
            "average_score_given": 0.0,
            "average_review_time_hours": 0.0,
            "updated_at": None,
        }
    return {
        "reviewer_id": reviewer_id,
        "total_verifications": row.total_verifications,
        "total_earnings": row.total_earnings,
        "approval_rate": row.approval_rate,
        "average_score_given": row.average_score_given,
        "average_review_time_hours": row.average_review_time_hours,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def get_settlement_history(db: Session, reviewer_id: int, limit: int = 12) -> list:
    settlements = db.query(Settlement).filter(
        Settlement.owner_type == OwnerType.REVIEWER,
        Settlement.owner_id == reviewer_id,
    ).order_by(Settlement.period_start.desc()).limit(limit).all()
    return [{
        "id": s.id,
        "period_start": s.period_start.isoformat(),
        "period_end": s.period_end.isoformat(),
        "verification_earnings": s.verification_earnings,
        "verification_count": s.verification_count,
        "payout_amount": s.payout_amount,
        "status": s.status.value,
        "payout_date": s.payout_date.isoformat() if s.payout_date else None,
    } for s in settlements]
