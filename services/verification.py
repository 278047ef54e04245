"""
Product Verification State Machine
══════════════════════════════════════════════════
Request → claim → start → submit for Levels 1-2, automated decision for
Level 0, and panel fan-out for Level 3 (see services/expert_panel.py).

  PENDING ──claim──▶ ASSIGNED ──start──▶ IN_PROGRESS ──submit──▶ COMPLETED
     │                                                              │
     └──cancel──▶ CANCELLED                          admin ──▶ APPROVED / REJECTED

Every transition is a conditional UPDATE on the expected status; a zero row
count means another actor got there first and the call fails with a conflict.
Approval and rejection live in services/admin_verification.py.
"""

import json
import logging
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import MAX_ENABLED_VERIFICATION_LEVEL
from database import transaction, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models import (
    ExpertReview, ExpertReviewStatus, ExpertType, Product, Recommendation,
    Verification, VerificationStatus,
)
from schemas import AutomatedReport, ManualReview, ManualReviewReport, parse_report
from services.auto_checks import run_automated_checks
from services.fee_policy import compute_split, fee_for_level, split_panel_fee
from services.identity import Capability, get_user, has_capability, require_capability

logger = logging.getLogger("verimarket.verification")

ACTIVE_STATUSES = (
    VerificationStatus.PENDING,
    VerificationStatus.ASSIGNED,
    VerificationStatus.IN_PROGRESS,
    VerificationStatus.COMPLETED,
)
PANEL_LEVEL = 3
QUALITY_BADGE = "quality"
QUALITY_BADGE_THRESHOLD = 85


# ═══════════════════════════════════════════════
#  SERIALIZATION
# ═══════════════════════════════════════════════

def _iso(dt):
    return dt.isoformat() if dt else None


def expert_review_to_dict(er: ExpertReview) -> dict:
    return {
        "id": er.id,
        "verification_id": er.verification_id,
        "expert_type": er.expert_type.value,
        "expert_id": er.expert_id,
        "status": er.status.value,
        "fee": er.fee,
        "platform_share": er.platform_share,
        "expert_share": er.expert_share,
        "score": er.score,
        "recommendation": er.recommendation.value if er.recommendation else None,
        "feedback": er.feedback,
        "requested_at": _iso(er.requested_at),
        "assigned_at": _iso(er.assigned_at),
        "reviewed_at": _iso(er.reviewed_at),
        "completed_at": _iso(er.completed_at),
    }


def verification_to_dict(v: Verification) -> dict:
    data = {
        "id": v.id,
        "product_id": v.product_id,
        "requester_id": v.requester_id,
        "reviewer_id": v.reviewer_id,
        "level": v.level,
        "status": v.status.value,
        "fee": v.fee,
        "platform_share": v.platform_share,
        "reviewer_share": v.reviewer_share,
        "score": v.score,
        "badges": v.badges,
        "report": v.report,
        "admin_decision": v.admin_decision,
        "requested_at": _iso(v.requested_at),
        "assigned_at": _iso(v.assigned_at),
        "reviewed_at": _iso(v.reviewed_at),
        "completed_at": _iso(v.completed_at),
    }
    if v.level == PANEL_LEVEL:
        data["expert_reviews"] = [expert_review_to_dict(er) for er in v.expert_reviews]
    return data


def get_verification_or_404(db: Session, verification_id: int) -> Verification:
    v = db.query(Verification).filter(Verification.id == verification_id).first()
    if not v:
        raise NotFoundError(f"Verification {verification_id} not found")
    return v


# ═══════════════════════════════════════════════
#  REVIEW PAYLOAD RULES (shared with the expert panel)
# ═══════════════════════════════════════════════

def validate_review(review) -> dict:
    """Normalize a review payload or raise ValidationError. Runs before any state check."""
    data = review.model_dump() if isinstance(review, BaseModel) else dict(review or {})

    score = data.get("score")
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError("Score must be an integer between 0 and 100")
    if score < 0 or score > 100:
        raise ValidationError("Score must be between 0 and 100")

    try:
        recommendation = Recommendation(data.get("recommendation"))
    except ValueError:
        raise ValidationError("Recommendation must be APPROVE or REJECT")

    comments = (data.get("comments") or "").strip()
    if recommendation == Recommendation.REJECT and not comments:
        raise ValidationError("Comments are required when recommending rejection")
    if not comments:
        raise ValidationError("Review comments are required")

    return {
        "score": score,
        "comments": comments,
        "recommendation": recommendation,
        "badges": [b.strip() for b in data.get("badges") or [] if b and b.strip()],
        "improvements": [i.strip() for i in data.get("improvements") or [] if i and i.strip()],
    }


def derive_badges(score, reviewer_badges) -> list:
    badges = []
    if score is not None and score >= QUALITY_BADGE_THRESHOLD:
        badges.append(QUALITY_BADGE)
    for badge in reviewer_badges or []:
        if badge not in badges:
            badges.append(badge)
    return badges


def ensure_not_seller(db: Session, verification: Verification, user_id: int) -> None:
    product = db.query(Product).filter(Product.id == verification.product_id).first()
    if product and product.seller_id == user_id:
        raise AuthorizationError("Cannot review your own product")


# ═══════════════════════════════════════════════
#  REQUEST
# ═══════════════════════════════════════════════

def request_verification(db: Session, product_id: int, requester_id: int, level: int) -> dict:
    """Open a verification for a product. Level 0 is decided on the spot."""
    fee = fee_for_level(level)
    if level > MAX_ENABLED_VERIFICATION_LEVEL:
        raise ValidationError(f"Verification level {level} is not yet enabled")

    require_capability(db, requester_id, Capability.REQUEST_VERIFICATION)
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise NotFoundError(f"Product {product_id} not found")
    if product.seller_id != requester_id:
        raise AuthorizationError("Only the product owner can request verification")

    active = db.query(Verification).filter(
        Verification.product_id == product_id,
        Verification.status.in_(ACTIVE_STATUSES),
    ).first()
    if active:
        raise ConflictError(f"Product already has an active verification (ID: {active.id})")

    automated = run_automated_checks(product)
    now = utcnow()

    if level == 0:
        return _finish_automated(db, product, requester_id, automated, now)

    if not automated.passed:
        failed = "; ".join(c.message for c in automated.checks if not c.passed)
        raise ValidationError(f"Automated checks failed: {failed}")

    try:
        with transaction(db):
            verification = _new_request(product_id, requester_id, level, fee, automated, now)
            db.add(verification)
    except IntegrityError:
        raise ConflictError(f"Product {product_id} already has an active verification")

    db.refresh(verification)
    logger.info(f"Verification {verification.id} requested: product={product_id} level={level} fee={fee}")
    return verification_to_dict(verification)


def _new_request(product_id: int, requester_id: int, level: int, fee: int, automated, now) -> Verification:
    verification = Verification(
        product_id=product_id,
        requester_id=requester_id,
        level=level,
        status=VerificationStatus.PENDING,
        fee=fee,
        report_json=automated.model_dump_json(),
        requested_at=now,
    )
    if level == PANEL_LEVEL:
        panel = []
        for expert_type, part in zip(ExpertType, split_panel_fee(fee)):
            split = compute_split(part)
            panel.append(ExpertReview(
                expert_type=expert_type,
                status=ExpertReviewStatus.PENDING,
                fee=part,
                platform_share=split["platform_share"],
                expert_share=split["reviewer_share"],
                requested_at=now,
            ))
        verification.platform_share = sum(er.platform_share for er in panel)
        verification.reviewer_share = sum(er.expert_share for er in panel)
        verification.expert_reviews = panel
    else:
        split = compute_split(fee)
        verification.platform_share = split["platform_share"]
        verification.reviewer_share = split["reviewer_share"]
    return verification


def _finish_automated(db: Session, product: Product, requester_id: int, automated, now) -> dict:
    status = VerificationStatus.APPROVED if automated.passed else VerificationStatus.REJECTED
    with transaction(db):
        verification = Verification(
            product_id=product.id,
            requester_id=requester_id,
            level=0,
            status=status,
            fee=0,
            platform_share=0,
            reviewer_share=0,
            score=automated.score,
            report_json=automated.model_dump_json(),
            requested_at=now,
            reviewed_at=now,
            completed_at=now,
        )
        verification.badges = []
        db.add(verification)
        # Level 0 never lowers a product that already holds a manual level
        if automated.passed and product.verification_level <= 0:
            product.verification_level = 0
            product.verification_score = automated.score
            product.verification_badges = []

    db.refresh(verification)
    logger.info(f"Level 0 verification {verification.id} for product {product.id}: {status.value}")
    return verification_to_dict(verification)


# ═══════════════════════════════════════════════
#  CLAIM / START / SUBMIT
# ═══════════════════════════════════════════════

def can_claim_verification(db: Session, verification_id: int, reviewer_id: int) -> dict:
    """Read-only pre-check mirroring the claim rules."""
    v = db.query(Verification).filter(Verification.id == verification_id).first()
    if not v:
        return {"can_claim": False, "reason": "Verification not found"}
    if v.level == PANEL_LEVEL:
        return {"can_claim": False, "reason": "Expert panel verifications are assigned per expert"}
    if v.status != VerificationStatus.PENDING:
        return {"can_claim": False, "reason": f"Verification is {v.status.value}"}
    if v.reviewer_id is not None:
        return {"can_claim": False, "reason": "Already assigned to another reviewer"}
    product = db.query(Product).filter(Product.id == v.product_id).first()
    if product and product.seller_id == reviewer_id:
        return {"can_claim": False, "reason": "Cannot review your own product"}
    try:
        user = get_user(db, reviewer_id)
    except NotFoundError:
        return {"can_claim": False, "reason": "Reviewer not found"}
    if not has_capability(user, Capability.REVIEW_VERIFICATION):
        return {"can_claim": False, "reason": "User is not a verifier"}
    return {"can_claim": True, "reason": None}


def claim_verification(db: Session, verification_id: int, reviewer_id: int) -> dict:
    """Take an unassigned PENDING verification. Exactly one concurrent claimer wins."""
    require_capability(db, reviewer_id, Capability.REVIEW_VERIFICATION)
    v = get_verification_or_404(db, verification_id)
    if v.level == PANEL_LEVEL:
        raise ConflictError("Expert panel verifications are assigned per expert")
    ensure_not_seller(db, v, reviewer_id)

    now = utcnow()
    with transaction(db):
        claimed = db.query(Verification).filter(
            Verification.id == verification_id,
            Verification.status == VerificationStatus.PENDING,
            Verification.reviewer_id.is_(None),
        ).update({
            Verification.status: VerificationStatus.ASSIGNED,
            Verification.reviewer_id: reviewer_id,
            Verification.assigned_at: now,
        }, synchronize_session=False)
        if claimed != 1:
            raise ConflictError("Verification is no longer available to claim")

    db.refresh(v)
    logger.info(f"Verification {verification_id} claimed by reviewer {reviewer_id}")
    return verification_to_dict(v)


def start_review(db: Session, verification_id: int, reviewer_id: int) -> dict:
    v = get_verification_or_404(db, verification_id)
    if v.reviewer_id != reviewer_id:
        raise AuthorizationError("Only the assigned reviewer can start this review")

    with transaction(db):
        started = db.query(Verification).filter(
            Verification.id == verification_id,
            Verification.reviewer_id == reviewer_id,
            Verification.status == VerificationStatus.ASSIGNED,
        ).update({Verification.status: VerificationStatus.IN_PROGRESS}, synchronize_session=False)
        if started != 1:
            raise ConflictError(f"Cannot start review from status {v.status.value}")

    db.refresh(v)
    return verification_to_dict(v)


def submit_review(db: Session, verification_id: int, reviewer_id: int, review) -> dict:
    """Record the reviewer's verdict; IN_PROGRESS → COMPLETED, awaiting the admin decision."""
    data = validate_review(review)

    v = get_verification_or_404(db, verification_id)
    if v.level == PANEL_LEVEL:
        raise ConflictError("Expert panel verifications are reviewed per expert")
    if v.reviewer_id != reviewer_id:
        raise AuthorizationError("Only the assigned reviewer can submit this review")

    now = utcnow()
    existing = parse_report(v.report)
    automated = existing if isinstance(existing, AutomatedReport) else None
    report = ManualReviewReport(
        automated=automated,
        review=ManualReview(reviewed_by=reviewer_id, reviewed_at=now, **data),
    )
    badges = derive_badges(data["score"], data["badges"])

    with transaction(db):
        submitted = db.query(Verification).filter(
            Verification.id == verification_id,
            Verification.reviewer_id == reviewer_id,
            Verification.status == VerificationStatus.IN_PROGRESS,
        ).update({
            Verification.status: VerificationStatus.COMPLETED,
            Verification.score: data["score"],
            Verification.badges_json: json.dumps(badges),
            Verification.report_json: report.model_dump_json(),
            Verification.reviewed_at: now,
            Verification.completed_at: now,
        }, synchronize_session=False)
        if submitted != 1:
            raise ConflictError(f"Cannot submit review from status {v.status.value}")

    db.refresh(v)
    logger.info(
        f"Verification {verification_id} review submitted by {reviewer_id}: "
        f"score={data['score']} recommendation={data['recommendation'].value}"
    )
    return verification_to_dict(v)


# ═══════════════════════════════════════════════
#  CANCEL
# ═══════════════════════════════════════════════

def cancel_verification(db: Session, verification_id: int, requester_id: int) -> dict:
    v = get_verification_or_404(db, verification_id)
    if v.requester_id != requester_id:
        raise AuthorizationError("Only the requester can cancel this verification")

    with transaction(db):
        cancelled = db.query(Verification).filter(
            Verification.id == verification_id,
            Verification.status == VerificationStatus.PENDING,
        ).update({Verification.status: VerificationStatus.CANCELLED}, synchronize_session=False)
        if cancelled != 1:
            raise ConflictError(f"Only pending verifications can be cancelled (status: {v.status.value})")
        db.query(ExpertReview).filter(
            ExpertReview.verification_id == verification_id,
        ).update({ExpertReview.status: ExpertReviewStatus.CANCELLED}, synchronize_session=False)

    db.refresh(v)
    for er in v.expert_reviews:
        db.refresh(er)
    logger.info(f"Verification {verification_id} cancelled by requester {requester_id}")
    return verification_to_dict(v)


# ═══════════════════════════════════════════════
#  QUERIES
# ═══════════════════════════════════════════════

def get_verification(db: Session, verification_id: int) -> dict:
    return verification_to_dict(get_verification_or_404(db, verification_id))


def list_available_verifications(db: Session, level: Optional[int] = None) -> list:
    """Unassigned PENDING verifications a reviewer could claim, oldest first."""
    q = db.query(Verification).filter(
        Verification.status == VerificationStatus.PENDING,
        Verification.reviewer_id.is_(None),
        Verification.level != PANEL_LEVEL,
    )
    if level is not None:
        q = q.filter(Verification.level == level)
    return [verification_to_dict(v) for v in q.order_by(Verification.requested_at.asc(), Verification.id.asc()).all()]


def list_reviewer_verifications(db: Session, reviewer_id: int, statuses=None) -> list:
    q = db.query(Verification).filter(Verification.reviewer_id == reviewer_id)
    if statuses:
        q = q.filter(Verification.status.in_([VerificationStatus(s) for s in statuses]))
    return [verification_to_dict(v) for v in q.order_by(Verification.assigned_at.desc()).all()]
