"""
Level 3 Expert Panel
══════════════════════════════════════════════════
Four independent specialist reviews (design, planning, development, domain)
hang off one parent verification. Each slot runs its own
PENDING → ASSIGNED → IN_PROGRESS → COMPLETED machine; the parent follows:

  first slot assigned   → parent ASSIGNED
  first slot started    → parent IN_PROGRESS
  all four completed    → parent COMPLETED (score = mean of expert scores)

A REJECT from one expert never blocks the others; the admin sees every
recommendation in the panel report.
"""

import json
import logging

from sqlalchemy.orm import Session

from database import transaction, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError
from models import ExpertReview, ExpertReviewStatus, Recommendation, Verification, VerificationStatus
from schemas import AutomatedReport, ExpertPanelReport, ExpertSummary, ManualReview, parse_report
from services.identity import Capability, require_capability
from services.verification import (
    derive_badges, ensure_not_seller, expert_review_to_dict, validate_review,
)

logger = logging.getLogger("verimarket.expert_panel")


def get_expert_review_or_404(db: Session, expert_review_id: int) -> ExpertReview:
    er = db.query(ExpertReview).filter(ExpertReview.id == expert_review_id).first()
    if not er:
        raise NotFoundError(f"Expert review {expert_review_id} not found")
    return er


def check_expert_eligibility(db: Session, er: ExpertReview, expert_id: int):
    """Capability, specialty, seller and one-slot-per-panel rules for an expert taking ``er``."""
    expert = require_capability(db, expert_id, Capability.EXPERT_REVIEW)
    if expert.expert_type is not None and expert.expert_type != er.expert_type:
        raise AuthorizationError(
            f"Expert specializes in {expert.expert_type.value}, slot requires {er.expert_type.value}"
        )
    ensure_not_seller(db, er.verification, expert_id)

    other_slot = db.query(ExpertReview).filter(
        ExpertReview.verification_id == er.verification_id,
        ExpertReview.expert_id == expert_id,
        ExpertReview.id != er.id,
    ).first()
    if other_slot:
        raise ConflictError(f"Expert already holds the {other_slot.expert_type.value} slot on this panel")
    return expert


def mark_panel_assigned(db: Session, verification_id: int, now) -> None:
    """Move the parent PENDING → ASSIGNED on the first slot assignment. No-op afterwards."""
    db.query(Verification).filter(
        Verification.id == verification_id,
        Verification.status == VerificationStatus.PENDING,
    ).update({Verification.status: VerificationStatus.ASSIGNED}, synchronize_session=False)
    db.query(Verification).filter(
        Verification.id == verification_id,
        Verification.assigned_at.is_(None),
    ).update({Verification.assigned_at: now}, synchronize_session=False)


# ═══════════════════════════════════════════════
#  SLOT TRANSITIONS
# ═══════════════════════════════════════════════

def claim_expert_review(db: Session, expert_review_id: int, expert_id: int) -> dict:
    er = get_expert_review_or_404(db, expert_review_id)
    check_expert_eligibility(db, er, expert_id)

    now = utcnow()
    with transaction(db):
        claimed = db.query(ExpertReview).filter(
            ExpertReview.id == expert_review_id,
            ExpertReview.status == ExpertReviewStatus.PENDING,
            ExpertReview.expert_id.is_(None),
        ).update({
            ExpertReview.status: ExpertReviewStatus.ASSIGNED,
            ExpertReview.expert_id: expert_id,
            ExpertReview.assigned_at: now,
        }, synchronize_session=False)
        if claimed != 1:
            raise ConflictError("Expert review is no longer available to claim")
        mark_panel_assigned(db, er.verification_id, now)

    db.refresh(er)
    logger.info(f"Expert review {expert_review_id} ({er.expert_type.value}) claimed by expert {expert_id}")
    return expert_review_to_dict(er)


def start_expert_review(db: Session, expert_review_id: int, expert_id: int) -> dict:
    er = get_expert_review_or_404(db, expert_review_id)
    if er.expert_id != expert_id:
        raise AuthorizationError("Only the assigned expert can start this review")

    with transaction(db):
        started = db.query(ExpertReview).filter(
            ExpertReview.id == expert_review_id,
            ExpertReview.expert_id == expert_id,
            ExpertReview.status == ExpertReviewStatus.ASSIGNED,
        ).update({ExpertReview.status: ExpertReviewStatus.IN_PROGRESS}, synchronize_session=False)
        if started != 1:
            raise ConflictError(f"Cannot start expert review from status {er.status.value}")
        db.query(Verification).filter(
            Verification.id == er.verification_id,
            Verification.status == VerificationStatus.ASSIGNED,
        ).update({Verification.status: VerificationStatus.IN_PROGRESS}, synchronize_session=False)

    db.refresh(er)
    return expert_review_to_dict(er)


def submit_expert_review(db: Session, expert_review_id: int, expert_id: int, review) -> dict:
    data = validate_review(review)

    er = get_expert_review_or_404(db, expert_review_id)
    if er.expert_id != expert_id:
        raise AuthorizationError("Only the assigned expert can submit this review")

    now = utcnow()
    detail = ManualReview(reviewed_by=expert_id, reviewed_at=now, **data)

    with transaction(db):
        submitted = db.query(ExpertReview).filter(
            ExpertReview.id == expert_review_id,
            ExpertReview.expert_id == expert_id,
            ExpertReview.status == ExpertReviewStatus.IN_PROGRESS,
        ).update({
            ExpertReview.status: ExpertReviewStatus.COMPLETED,
            ExpertReview.score: data["score"],
            ExpertReview.recommendation: data["recommendation"],
            ExpertReview.feedback: data["comments"],
            ExpertReview.report_json: detail.model_dump_json(),
            ExpertReview.reviewed_at: now,
            ExpertReview.completed_at: now,
        }, synchronize_session=False)
        if submitted != 1:
            raise ConflictError(f"Cannot submit expert review from status {er.status.value}")
        panel_completed = _complete_panel_if_done(db, er.verification_id, now)

    db.refresh(er)
    logger.info(
        f"Expert review {expert_review_id} submitted: score={data['score']} "
        f"recommendation={data['recommendation'].value} panel_completed={panel_completed}"
    )
    return expert_review_to_dict(er)


def panel_parent_for_update(db: Session, verification_id: int):
    """Parent row query taking a row lock, so concurrent slot submissions count the panel one at a time."""
    return db.query(Verification).populate_existing().with_for_update().filter(
        Verification.id == verification_id,
    )


def _complete_panel_if_done(db: Session, verification_id: int, now) -> bool:
    # Lock before counting
    parent = panel_parent_for_update(db, verification_id).one()
    rows = db.query(ExpertReview).populate_existing().filter(
        ExpertReview.verification_id == verification_id,
    ).order_by(ExpertReview.id.asc()).all()
    if not rows or any(r.status != ExpertReviewStatus.COMPLETED for r in rows):
        return False

    report = build_panel_report(parent, rows)

    expert_badges = []
    for row in rows:
        if row.report_json:
            expert_badges.extend(json.loads(row.report_json).get("badges") or [])
    badges = derive_badges(report.aggregate_score, expert_badges)

    completed = db.query(Verification).filter(
        Verification.id == verification_id,
        Verification.status == VerificationStatus.IN_PROGRESS,
    ).update({
        Verification.status: VerificationStatus.COMPLETED,
        Verification.score: report.aggregate_score,
        Verification.badges_json: json.dumps(badges),
        Verification.report_json: report.model_dump_json(),
        Verification.reviewed_at: now,
        Verification.completed_at: now,
    }, synchronize_session=False)
    if completed != 1:
        raise ConflictError("Expert panel parent is not in progress")
    logger.info(f"Expert panel for verification {verification_id} complete: score={report.aggregate_score}")
    return True


def build_panel_report(parent: Verification, rows) -> ExpertPanelReport:
    scores = [r.score for r in rows if r.score is not None]
    existing = parse_report(parent.report)
    if isinstance(existing, AutomatedReport):
        automated = existing
    else:
        automated = getattr(existing, "automated", None)

    return ExpertPanelReport(
        automated=automated,
        experts=[
            ExpertSummary(
                expert_review_id=r.id,
                expert_type=r.expert_type,
                expert_id=r.expert_id,
                score=r.score,
                recommendation=r.recommendation,
                feedback=r.feedback,
            )
            for r in rows
        ],
        aggregate_score=sum(scores) / len(scores) if scores else None,
        approve_count=sum(1 for r in rows if r.recommendation == Recommendation.APPROVE),
        reject_count=sum(1 for r in rows if r.recommendation == Recommendation.REJECT),
    )


# ═══════════════════════════════════════════════
#  QUERIES
# ═══════════════════════════════════════════════

def panel_progress(db: Session, verification_id: int) -> dict:
    rows = db.query(ExpertReview).filter(
        ExpertReview.verification_id == verification_id,
    ).order_by(ExpertReview.id.asc()).all()
    if not rows:
        raise NotFoundError(f"No expert panel for verification {verification_id}")

    completed = [r for r in rows if r.status == ExpertReviewStatus.COMPLETED]
    return {
        "verification_id": verification_id,
        "completed": len(completed),
        "total": len(rows),
        "scores": {r.expert_type.value: r.score for r in completed},
        "experts": [expert_review_to_dict(r) for r in rows],
    }


def list_available_expert_reviews(db: Session, expert_type=None) -> list:
    q = db.query(ExpertReview).filter(
        ExpertReview.status == ExpertReviewStatus.PENDING,
        ExpertReview.expert_id.is_(None),
    )
    if expert_type is not None:
        q = q.filter(ExpertReview.expert_type == expert_type)
    return [expert_review_to_dict(r) for r in q.order_by(ExpertReview.requested_at.asc(), ExpertReview.id.asc()).all()]
