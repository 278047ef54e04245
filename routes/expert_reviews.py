"""
Expert panel routes: Level 3 slot claim, start and submission.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from errors import ServiceError
from models import ExpertType, User
from routes.auth import get_current_user, http_error, require_capability
from schemas import ReviewSubmission
from services import expert_panel
from services.identity import Capability

router = APIRouter(prefix="/api/expert-reviews", tags=["expert-reviews"])


@router.get("/available")
def available_slots(
    expert_type: Optional[ExpertType] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_capability(Capability.EXPERT_REVIEW)),
):
    return expert_panel.list_available_expert_reviews(db, expert_type or current_user.expert_type)


@router.get("/panel/{verification_id}")
def progress(verification_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Completed / total slots and scores so far."""
    try:
        return expert_panel.panel_progress(db, verification_id)
    except ServiceError as e:
        raise http_error(e)


@router.post("/{expert_review_id}/claim")
def claim(expert_review_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    try:
        return expert_panel.claim_expert_review(db, expert_review_id, current_user.id)
    except ServiceError as e:
        raise http_error(e)


@router.post("/{expert_review_id}/start")
def start(expert_review_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    try:
        return expert_panel.start_expert_review(db, expert_review_id, current_user.id)
    except ServiceError as e:
        raise http_error(e)


@router.post("/{expert_review_id}/submit")
def submit(
    expert_review_id: int,
    body: ReviewSubmission,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return expert_panel.submit_expert_review(db, expert_review_id, current_user.id, body)
    except ServiceError as e:
        raise http_error(e)
