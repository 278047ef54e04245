"""
Settlement routes: owner views, manual runs and the payout lifecycle.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from errors import ServiceError
from models import OwnerType, User
from routes.auth import get_current_user, http_error, require_capability
from schemas import PayoutFailureRequest, PayoutProcessRequest, SettlementRunRequest
from services import settlement as settlement_service
from services.identity import Capability, has_capability
from services.settlement_batch import run_settlement_for_owner

router = APIRouter(prefix="/api/settlements", tags=["settlements"])

require_admin = require_capability(Capability.ADMINISTER)


def _owner_type_for(user: User) -> OwnerType:
    if has_capability(user, Capability.REVIEW_VERIFICATION) or has_capability(user, Capability.EXPERT_REVIEW):
        return OwnerType.REVIEWER
    return OwnerType.SELLER


# ═══════════════════════════════════════════════
#  OWNER VIEWS
# ═══════════════════════════════════════════════

@router.get("/mine")
def my_settlements(limit: int = 10, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return settlement_service.list_settlements_for_owner(db, current_user.id, _owner_type_for(current_user), limit)


@router.get("/estimate")
def current_month_estimate(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Month-to-date projection for the current user."""
    return settlement_service.get_current_month_estimate(db, current_user.id)


@router.get("/summary")
def summary(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Admins get the platform-wide summary; everyone else their own."""
    if has_capability(current_user, Capability.ADMINISTER):
        return settlement_service.get_settlement_summary(db)
    return settlement_service.get_settlement_summary(db, (_owner_type_for(current_user), current_user.id))


@router.get("/{settlement_id}")
def details(settlement_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    try:
        data = settlement_service.get_settlement_details(db, settlement_id)
    except ServiceError as e:
        raise http_error(e)
    if data["owner_id"] != current_user.id and not has_capability(current_user, Capability.ADMINISTER):
        raise HTTPException(status_code=403, detail="Not your settlement")
    return data


# ═══════════════════════════════════════════════
#  ADMIN: RUN & PAYOUT LIFECYCLE
# ═══════════════════════════════════════════════

@router.post("/run")
def run_for_owner(body: SettlementRunRequest, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    """Settle one owner for one month (default: last month)."""
    try:
        outcome = run_settlement_for_owner(db, body.owner_id, body.owner_type, body.period)
    except ServiceError as e:
        raise http_error(e)
    if outcome.status == "failed":
        raise HTTPException(status_code=400, detail=outcome.error)
    return outcome


@router.post("/{settlement_id}/process")
def process(settlement_id: int, body: PayoutProcessRequest, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    try:
        return settlement_service.process_settlement_payout(db, settlement_id, body.payout_method, body.payout_reference)
    except ServiceError as e:
        raise http_error(e)


@router.post("/{settlement_id}/paid")
def mark_paid(settlement_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    try:
        return settlement_service.mark_settlement_paid(db, settlement_id)
    except ServiceError as e:
        raise http_error(e)


@router.post("/{settlement_id}/failed")
def mark_failed(settlement_id: int, body: PayoutFailureRequest, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    try:
        return settlement_service.mark_settlement_failed(db, settlement_id, body.reason)
    except ServiceError as e:
        raise http_error(e)


@router.post("/{settlement_id}/cancel")
def cancel(settlement_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    try:
        return settlement_service.cancel_settlement(db, settlement_id)
    except ServiceError as e:
        raise http_error(e)
