"""
Admin verification routes: assignment, approval / rejection and statistics.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from models import ExpertType, User
from routes.auth import require_capability, unwrap_result
from schemas import ApproveRequest, AssignRequest, RejectRequest
from services import admin_verification as admin_service
from services.identity import Capability

router = APIRouter(prefix="/api/admin/verifications", tags=["admin"])

require_admin = require_capability(Capability.ADMINISTER)


# ═══════════════════════════════════════════════
#  DIRECTORY & STATS
# ═══════════════════════════════════════════════

@router.get("/statistics")
def statistics(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return admin_service.get_verification_statistics(db)


@router.get("/verifiers")
def verifiers(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return admin_service.list_available_verifiers(db)


@router.get("/experts")
def experts(expert_type: Optional[ExpertType] = None, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return admin_service.list_available_experts(db, expert_type)


@router.get("/{verification_id}")
def details(verification_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return unwrap_result(admin_service.get_verification_details(db, verification_id))


# ═══════════════════════════════════════════════
#  ASSIGNMENT
# ═══════════════════════════════════════════════

@router.post("/{verification_id}/assign")
def assign_verifier(verification_id: int, body: AssignRequest, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return unwrap_result(admin_service.assign_verifier(db, verification_id, body.user_id))


@router.post("/expert-reviews/{expert_review_id}/assign")
def assign_expert(expert_review_id: int, body: AssignRequest, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return unwrap_result(admin_service.assign_expert(db, expert_review_id, body.user_id))


# ═══════════════════════════════════════════════
#  DECISION
# ═══════════════════════════════════════════════

@router.post("/{verification_id}/approve")
def approve(verification_id: int, body: ApproveRequest, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return unwrap_result(admin_service.approve_verification(db, verification_id, body.comment))


@router.post("/{verification_id}/reject")
def reject(verification_id: int, body: RejectRequest, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return unwrap_result(admin_service.reject_verification(db, verification_id, body.reason))
