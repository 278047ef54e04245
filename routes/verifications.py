"""
Verification routes: request, claim, review and cancel product verifications.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from database import get_db
from errors import ServiceError
from models import User
from routes.auth import get_current_user, http_error, require_capability
from schemas import ReviewSubmission, VerificationRequest
from services import verification as verification_service
from services.identity import Capability

router = APIRouter(prefix="/api/verifications", tags=["verifications"])


@router.post("", status_code=201)
def request_verification(
    body: VerificationRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_capability(Capability.REQUEST_VERIFICATION)),
):
    """Request verification of one of your products at the given level."""
    try:
        return verification_service.request_verification(db, body.product_id, current_user.id, body.level)
    except ServiceError as e:
        raise http_error(e)


@router.get("/available")
def available_verifications(
    level: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_capability(Capability.REVIEW_VERIFICATION)),
):
    return verification_service.list_available_verifications(db, level)


@router.get("/mine")
def my_reviews(
    status: Optional[List[str]] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_capability(Capability.REVIEW_VERIFICATION)),
):
    """Verifications assigned to the current reviewer."""
    try:
        return verification_service.list_reviewer_verifications(db, current_user.id, status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid status filter: {status}")


@router.get("/{verification_id}")
def get_verification(verification_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    try:
        return verification_service.get_verification(db, verification_id)
    except ServiceError as e:
        raise http_error(e)


@router.get("/{verification_id}/can-claim")
def can_claim(verification_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return verification_service.can_claim_verification(db, verification_id, current_user.id)


@router.post("/{verification_id}/claim")
def claim(verification_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    try:
        return verification_service.claim_verification(db, verification_id, current_user.id)
    except ServiceError as e:
        raise http_error(e)


@router.post("/{verification_id}/start")
def start(verification_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    try:
        return verification_service.start_review(db, verification_id, current_user.id)
    except ServiceError as e:
        raise http_error(e)


@router.post("/{verification_id}/submit")
def submit(
    verification_id: int,
    body: ReviewSubmission,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return verification_service.submit_review(db, verification_id, current_user.id, body)
    except ServiceError as e:
        raise http_error(e)


@router.post("/{verification_id}/cancel")
def cancel(verification_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    try:
        return verification_service.cancel_verification(db, verification_id, current_user.id)
    except ServiceError as e:
        raise http_error(e)
