"""
Admin Verification Orchestration
══════════════════════════════════════════════════
Assignment, final approval / rejection and reporting for administrators.

Every mutating call returns {"success", "message", "data", "error"} where
``error`` is the error code (VALIDATION_ERROR, CONFLICT, NOT_FOUND, FORBIDDEN)
on failure. Approval and rejection are a single transaction: the status move,
the admin decision, the catalog update and the payout rows either all land or
none do.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import transaction, utcnow
from errors import ConflictError, ServiceError, ValidationError
from models import (
    ExpertReview, ExpertReviewStatus, Notification, Product, UNVERIFIED_LEVEL,
    User, Verification, VerificationStatus,
)
from schemas import AdminDecision
from services.earnings import record_earning, record_expert_earning, update_stats
from services.expert_panel import check_expert_eligibility, get_expert_review_or_404, mark_panel_assigned
from services.identity import Capability, has_capability, require_capability, roles_with
from services.verification import (
    PANEL_LEVEL, ensure_not_seller, expert_review_to_dict, get_verification_or_404, verification_to_dict,
)

logger = logging.getLogger("verimarket.admin")

ASSIGNABLE_STATUSES = (VerificationStatus.ASSIGNED, VerificationStatus.IN_PROGRESS)
ASSIGNABLE_EXPERT_STATUSES = (ExpertReviewStatus.ASSIGNED, ExpertReviewStatus.IN_PROGRESS)


def _ok(message: str, data=None) -> dict:
    return {"success": True, "message": message, "data": data, "error": None}


def _fail(exc: ServiceError) -> dict:
    return {"success": False, "message": exc.message, "data": None, "error": exc.code}


def _db_fail(action: str, exc: SQLAlchemyError) -> dict:
    logger.error(f"{action} failed: {exc}")
    return {"success": False, "message": f"Failed to {action}", "data": None, "error": "DATABASE_ERROR"}


# ═══════════════════════════════════════════════
#  ASSIGNMENT
# ═══════════════════════════════════════════════

def assign_verifier(db: Session, verification_id: int, verifier_id: int) -> dict:
    """PENDING → ASSIGNED, or swap the assignee of an ASSIGNED / IN_PROGRESS verification."""
    try:
        v = get_verification_or_404(db, verification_id)
        require_capability(db, verifier_id, Capability.REVIEW_VERIFICATION)
        if v.level == PANEL_LEVEL:
            raise ConflictError("Expert panel verifications are assigned per expert review")
        ensure_not_seller(db, v, verifier_id)

        current = v.status
        with transaction(db):
            if current == VerificationStatus.PENDING:
                updated = db.query(Verification).filter(
                    Verification.id == verification_id,
                    Verification.status == VerificationStatus.PENDING,
                ).update({
                    Verification.status: VerificationStatus.ASSIGNED,
                    Verification.reviewer_id: verifier_id,
                    Verification.assigned_at: v.assigned_at or utcnow(),
                }, synchronize_session=False)
            elif current in ASSIGNABLE_STATUSES:
                updated = db.query(Verification).filter(
                    Verification.id == verification_id,
                    Verification.status == current,
                ).update({Verification.reviewer_id: verifier_id}, synchronize_session=False)
            else:
                raise ConflictError(f"Cannot assign a verifier to a {current.value} verification")
            if updated != 1:
                raise ConflictError("Verification changed while assigning; retry")

        db.refresh(v)
        logger.info(f"Verification {verification_id} assigned to verifier {verifier_id}")
        return _ok("Verifier assigned successfully", verification_to_dict(v))
    except ServiceError as exc:
        return _fail(exc)
    except SQLAlchemyError as exc:
        db.rollback()
        return _db_fail("assign verifier", exc)


def assign_expert(db: Session, expert_review_id: int, expert_id: int) -> dict:
    try:
        er = get_expert_review_or_404(db, expert_review_id)
        check_expert_eligibility(db, er, expert_id)

        current = er.status
        now = utcnow()
        with transaction(db):
            if current == ExpertReviewStatus.PENDING:
                updated = db.query(ExpertReview).filter(
                    ExpertReview.id == expert_review_id,
                    ExpertReview.status == ExpertReviewStatus.PENDING,
                ).update({
                    ExpertReview.status: ExpertReviewStatus.ASSIGNED,
                    ExpertReview.expert_id: expert_id,
                    ExpertReview.assigned_at: er.assigned_at or now,
                }, synchronize_session=False)
                mark_panel_assigned(db, er.verification_id, now)
            elif current in ASSIGNABLE_EXPERT_STATUSES:
                updated = db.query(ExpertReview).filter(
                    ExpertReview.id == expert_review_id,
                    ExpertReview.status == current,
                ).update({ExpertReview.expert_id: expert_id}, synchronize_session=False)
            else:
                raise ConflictError(f"Cannot assign an expert to a {current.value} expert review")
            if updated != 1:
                raise ConflictError("Expert review changed while assigning; retry")

        db.refresh(er)
        logger.info(f"Expert review {expert_review_id} ({er.expert_type.value}) assigned to expert {expert_id}")
        return _ok("Expert assigned successfully", expert_review_to_dict(er))
    except ServiceError as exc:
        return _fail(exc)
    except SQLAlchemyError as exc:
        db.rollback()
        return _db_fail("assign expert", exc)


# ═══════════════════════════════════════════════
#  DECISION
# ═══════════════════════════════════════════════

def _decide(db: Session, verification_id: int, decision: AdminDecision) -> int:
    new_status = VerificationStatus(decision.action)
    decided = db.query(Verification).filter(
        Verification.id == verification_id,
        Verification.status == VerificationStatus.COMPLETED,
    ).update({
        Verification.status: new_status,
        Verification.admin_decision_json: decision.model_dump_json(),
    }, synchronize_session=False)
    if decided != 1:
        action = "approval" if new_status == VerificationStatus.APPROVED else "rejection"
        raise ConflictError(f"Verification must be in COMPLETED status for {action}")
    return decided


def _payees(v: Verification) -> list:
    if v.level == PANEL_LEVEL:
        return [er.expert_id for er in v.expert_reviews if er.expert_id]
    return [v.reviewer_id] if v.reviewer_id else []


def _refresh_stats(db: Session, user_ids: list) -> None:
    for user_id in user_ids:
        try:
            update_stats(db, user_id)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning(f"Stats refresh failed for reviewer {user_id}: {exc}")


def approve_verification(db: Session, verification_id: int, admin_comment: Optional[str] = None) -> dict:
    try:
        v = get_verification_or_404(db, verification_id)
        decision = AdminDecision(action="APPROVED", comment=admin_comment, decided_at=utcnow())

        with transaction(db):
            _decide(db, verification_id, decision)

            product = db.query(Product).filter(Product.id == v.product_id).first()
            product.verification_level = v.level
            product.verification_score = v.score
            product.verification_badges = v.badges

            if v.level == PANEL_LEVEL:
                for er in v.expert_reviews:
                    if er.expert_share > 0 and er.expert_id:
                        record_expert_earning(db, er.id, er.expert_id, er.expert_share)
            elif v.reviewer_share > 0 and v.reviewer_id:
                record_earning(db, v.id, v.reviewer_id, v.reviewer_share)

            db.add(Notification(
                user_id=v.requester_id,
                title="Verification approved",
                message=f"Your product '{product.name}' passed Level {v.level} verification.",
                notification_type="verification",
                link=f"/verifications/{v.id}",
            ))

        db.refresh(v)
        _refresh_stats(db, _payees(v))
        logger.info(f"Verification {verification_id} approved (level {v.level}, score {v.score})")
        return _ok("Verification approved", verification_to_dict(v))
    except ServiceError as exc:
        return _fail(exc)
    except SQLAlchemyError as exc:
        db.rollback()
        return _db_fail("approve verification", exc)


def reject_verification(db: Session, verification_id: int, reason: str) -> dict:
    try:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        v = get_verification_or_404(db, verification_id)
        decision = AdminDecision(action="REJECTED", reason=reason.strip(), decided_at=utcnow())

        with transaction(db):
            _decide(db, verification_id, decision)

            product = db.query(Product).filter(Product.id == v.product_id).first()
            product.verification_level = UNVERIFIED_LEVEL
            product.verification_score = None
            product.verification_badges = []

            db.add(Notification(
                user_id=v.requester_id,
                title="Verification rejected",
                message=f"Level {v.level} verification of '{product.name}' was rejected: {reason.strip()}",
                notification_type="verification",
                link=f"/verifications/{v.id}",
            ))

        db.refresh(v)
        _refresh_stats(db, _payees(v))
        logger.info(f"Verification {verification_id} rejected: {reason.strip()}")
        return _ok("Verification rejected", verification_to_dict(v))
    except ServiceError as exc:
        return _fail(exc)
    except SQLAlchemyError as exc:
        db.rollback()
        return _db_fail("reject verification", exc)


# ═══════════════════════════════════════════════
#  DIRECTORY
# ═══════════════════════════════════════════════

def _workload(db: Session, user_id: int) -> int:
    active = db.query(Verification).filter(
        Verification.reviewer_id == user_id,
        Verification.status.in_(ASSIGNABLE_STATUSES),
    ).count()
    active += db.query(ExpertReview).filter(
        ExpertReview.expert_id == user_id,
        ExpertReview.status.in_(ASSIGNABLE_EXPERT_STATUSES),
    ).count()
    return active


def _user_summary(db: Session, user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "expert_type": user.expert_type.value if user.expert_type else None,
        "active_assignments": _workload(db, user.id),
    }


def list_available_verifiers(db: Session) -> list:
    users = db.query(User).filter(
        User.role.in_(roles_with(Capability.REVIEW_VERIFICATION)),
        User.is_active == True,
    ).order_by(User.name.asc()).all()
    return [_user_summary(db, u) for u in users if has_capability(u, Capability.REVIEW_VERIFICATION)]


def list_available_experts(db: Session, expert_type=None) -> list:
    q = db.query(User).filter(
        User.role.in_(roles_with(Capability.EXPERT_REVIEW)),
        User.is_active == True,
    )
    if expert_type is not None:
        q = q.filter((User.expert_type == expert_type) | (User.expert_type.is_(None)))
    return [_user_summary(db, u) for u in q.order_by(User.name.asc()).all()]


# ═══════════════════════════════════════════════
#  REPORTING
# ═══════════════════════════════════════════════

def get_verification_details(db: Session, verification_id: int) -> dict:
    try:
        v = get_verification_or_404(db, verification_id)
    except ServiceError as exc:
        return _fail(exc)

    data = verification_to_dict(v)
    product = v.product
    data["product"] = {
        "id": product.id,
        "name": product.name,
        "seller_id": product.seller_id,
        "verification_level": product.verification_level,
    } if product else None
    data["requester"] = {"id": v.requester.id, "name": v.requester.name} if v.requester else None
    data["reviewer"] = {"id": v.reviewer.id, "name": v.reviewer.name} if v.reviewer else None
    return _ok("Verification found", data)


def get_verification_statistics(db: Session) -> dict:
    rows = db.query(Verification).all()

    by_status = {status.value: 0 for status in VerificationStatus}
    for v in rows:
        by_status[v.status.value] += 1

    days = [
        (v.completed_at - v.requested_at).total_seconds() / 86400
        for v in rows
        if v.completed_at and v.requested_at
    ]

    pending_assignments = sum(
        1 for v in rows
        if v.status == VerificationStatus.PENDING and v.reviewer_id is None and v.level not in (0, PANEL_LEVEL)
    )
    pending_expert_assignments = db.query(ExpertReview).filter(
        ExpertReview.status == ExpertReviewStatus.PENDING,
        ExpertReview.expert_id.is_(None),
    ).count()

    return {
        "total": len(rows),
        "by_status": by_status,
        "avg_completion_days": round(sum(days) / len(days), 2) if days else 0,
        "pending_assignments": pending_assignments,
        "pending_expert_assignments": pending_expert_assignments,
    }
