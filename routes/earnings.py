"""
Reviewer earnings routes: current month, breakdown, pending payouts, stats.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from models import User
from routes.auth import get_current_user
from services import earnings as earnings_service
from services.identity import Capability, has_capability

router = APIRouter(prefix="/api/verifier/earnings", tags=["earnings"])


def get_current_reviewer(current_user: User = Depends(get_current_user)) -> User:
    if not (has_capability(current_user, Capability.REVIEW_VERIFICATION)
            or has_capability(current_user, Capability.EXPERT_REVIEW)):
        raise HTTPException(status_code=403, detail="Only verifiers and experts have earnings")
    return current_user


@router.get("")
def current_month(db: Session = Depends(get_db), reviewer: User = Depends(get_current_reviewer)):
    return earnings_service.get_current_month_earnings(db, reviewer.id)


@router.get("/breakdown")
def breakdown(db: Session = Depends(get_db), reviewer: User = Depends(get_current_reviewer)):
    return earnings_service.get_earnings_breakdown(db, reviewer.id)


@router.get("/pending")
def pending(db: Session = Depends(get_db), reviewer: User = Depends(get_current_reviewer)):
    return earnings_service.get_pending_payouts(db, reviewer.id)


@router.get("/stats")
def stats(db: Session = Depends(get_db), reviewer: User = Depends(get_current_reviewer)):
    return earnings_service.get_stats(db, reviewer.id)


@router.post("/stats/refresh")
def refresh_stats(db: Session = Depends(get_db), reviewer: User = Depends(get_current_reviewer)):
    """Recompute stats from history now instead of waiting for the nightly job."""
    return earnings_service.update_stats(db, reviewer.id)


@router.get("/history")
def history(limit: int = 12, db: Session = Depends(get_db), reviewer: User = Depends(get_current_reviewer)):
    return earnings_service.get_settlement_history(db, reviewer.id, limit)
