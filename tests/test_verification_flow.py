"""Request → claim → start → submit → cancel for Levels 0-2."""

import pydantic
import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models import ReviewerPayout, UserRole, Verification, VerificationStatus
from schemas import AutomatedReport, ManualReviewReport, ReviewSubmission, parse_report
from services import verification as verification_service
from services.verification import (
    can_claim_verification, cancel_verification, claim_verification, get_verification,
    list_available_verifications, list_reviewer_verifications, request_verification,
    start_review, submit_review,
)


def _requested(db, make, level=1, **product_fields):
    seller = make.seller()
    product = make.product(seller, **product_fields)
    data = request_verification(db, product.id, seller.id, level)
    return seller, product, data


def _in_progress(db, make, level=1):
    seller, product, data = _requested(db, make, level)
    reviewer = make.verifier()
    claim_verification(db, data["id"], reviewer.id)
    start_review(db, data["id"], reviewer.id)
    return seller, reviewer, data["id"]


GOOD_REVIEW = {"score": 90, "comments": "Clean, well documented.", "recommendation": "APPROVE"}


# ═══════════════════════════════════════════════
#  REQUEST
# ═══════════════════════════════════════════════

def test_request_level_one_creates_pending_with_split(db, make):
    _, _, data = _requested(db, make, level=1)
    assert data["status"] == "PENDING"
    assert data["fee"] == 5000
    assert data["platform_share"] == 1500
    assert data["reviewer_share"] == 3500
    assert data["reviewer_id"] is None
    assert data["report"]["kind"] == "automated"
    assert data["report"]["passed"] is True


def test_request_level_two_fee(db, make):
    _, _, data = _requested(db, make, level=2)
    assert (data["fee"], data["platform_share"], data["reviewer_share"]) == (15000, 4500, 10500)


def test_only_owner_can_request(db, make):
    owner = make.seller()
    other = make.seller()
    product = make.product(owner)
    with pytest.raises(AuthorizationError):
        request_verification(db, product.id, other.id, 1)


def test_buyer_cannot_request(db, make):
    buyer = make.user(UserRole.BUYER)
    product = make.product(buyer)
    with pytest.raises(AuthorizationError):
        request_verification(db, product.id, buyer.id, 1)


def test_unknown_product(db, make):
    seller = make.seller()
    with pytest.raises(NotFoundError):
        request_verification(db, 9999, seller.id, 1)


def test_one_active_verification_per_product(db, make):
    seller, product, _ = _requested(db, make, level=1)
    with pytest.raises(ConflictError):
        request_verification(db, product.id, seller.id, 2)


def test_open_verification_unique_when_precheck_misses(db, make, monkeypatch):
    seller, product, _ = _requested(db, make, level=1)
    # Both requests pass the read check, as two racing requests would
    monkeypatch.setattr(verification_service, "ACTIVE_STATUSES", ())

    with pytest.raises(ConflictError, match=r"Product \d+ already has an active verification"):
        request_verification(db, product.id, seller.id, 2)
    assert db.query(Verification).filter(Verification.product_id == product.id).count() == 1


def test_database_allows_one_open_row_per_product(db, make):
    v = make.completed_verification()
    fields = dict(product_id=v.product_id, requester_id=v.requester_id, level=1,
                  fee=5000, platform_share=1500, reviewer_share=3500)

    db.add(Verification(status=VerificationStatus.PENDING, **fields))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

    db.add(Verification(status=VerificationStatus.REJECTED, **fields))
    db.add(Verification(status=VerificationStatus.CANCELLED, **fields))
    db.commit()
    assert db.query(Verification).filter(Verification.product_id == v.product_id).count() == 3


def test_unknown_level_rejected(db, make):
    seller = make.seller()
    product = make.product(seller)
    with pytest.raises(ValidationError):
        request_verification(db, product.id, seller.id, 5)


def test_disabled_level_rejected(db, make, monkeypatch):
    monkeypatch.setattr(verification_service, "MAX_ENABLED_VERIFICATION_LEVEL", 2)
    seller = make.seller()
    product = make.product(seller)
    with pytest.raises(ValidationError, match="not yet enabled"):
        request_verification(db, product.id, seller.id, 3)


def test_manual_level_requires_automated_checks(db, make):
    seller = make.seller()
    product = make.product(seller, description="Too short")
    with pytest.raises(ValidationError, match="Automated checks failed"):
        request_verification(db, product.id, seller.id, 1)
    assert db.query(Verification).count() == 0


# ═══════════════════════════════════════════════
#  LEVEL 0
# ═══════════════════════════════════════════════

def test_level_zero_auto_approves(db, make):
    _, product, data = _requested(db, make, level=0)
    assert data["status"] == "APPROVED"
    assert data["fee"] == 0
    assert data["reviewer_id"] is None
    assert data["score"] == 100
    assert data["completed_at"] is not None

    db.refresh(product)
    assert product.verification_level == 0
    assert product.verification_score == 100
    assert db.query(ReviewerPayout).count() == 0


def test_level_zero_auto_rejects_and_leaves_catalog(db, make):
    _, product, data = _requested(db, make, level=0, category=None, price=0)
    assert data["status"] == "REJECTED"
    assert data["score"] == 60
    failed = {c["name"] for c in data["report"]["checks"] if not c["passed"]}
    assert failed == {"category", "price"}

    db.refresh(product)
    assert product.verification_level == -1
    assert product.verification_score is None


def test_level_zero_does_not_block_next_request(db, make):
    seller, product, _ = _requested(db, make, level=0)
    data = request_verification(db, product.id, seller.id, 1)
    assert data["status"] == "PENDING"


def test_level_zero_pass_keeps_higher_level(db, make):
    seller = make.seller()
    product = make.product(seller, verification_level=2, verification_score=90.0)

    data = request_verification(db, product.id, seller.id, 0)
    assert data["status"] == "APPROVED"

    db.refresh(product)
    assert product.verification_level == 2
    assert product.verification_score == 90.0


# ═══════════════════════════════════════════════
#  CLAIM
# ═══════════════════════════════════════════════

def test_claim_assigns_with_timestamp(db, make):
    _, _, data = _requested(db, make)
    reviewer = make.verifier()

    claimed = claim_verification(db, data["id"], reviewer.id)
    assert claimed["status"] == "ASSIGNED"
    assert claimed["reviewer_id"] == reviewer.id
    assert claimed["assigned_at"] is not None
    assert claimed["assigned_at"] >= claimed["requested_at"]


def test_second_claim_conflicts(db, make):
    _, _, data = _requested(db, make)
    first, second = make.verifier(), make.verifier()
    claim_verification(db, data["id"], first.id)

    with pytest.raises(ConflictError):
        claim_verification(db, data["id"], second.id)
    assert get_verification(db, data["id"])["reviewer_id"] == first.id


def test_non_verifier_cannot_claim(db, make):
    _, _, data = _requested(db, make)
    buyer = make.user(UserRole.BUYER)
    with pytest.raises(AuthorizationError):
        claim_verification(db, data["id"], buyer.id)


def test_reviewer_cannot_claim_own_product(db, make):
    reviewer = make.verifier()
    product = make.product(reviewer)
    v = Verification(product_id=product.id, requester_id=reviewer.id, level=1,
                     status=VerificationStatus.PENDING, fee=5000, platform_share=1500, reviewer_share=3500)
    db.add(v)
    db.commit()

    assert can_claim_verification(db, v.id, reviewer.id) == {
        "can_claim": False, "reason": "Cannot review your own product",
    }
    with pytest.raises(AuthorizationError):
        claim_verification(db, v.id, reviewer.id)


def test_can_claim_precheck(db, make):
    _, _, data = _requested(db, make)
    reviewer, other = make.verifier(), make.verifier()

    assert can_claim_verification(db, data["id"], reviewer.id) == {"can_claim": True, "reason": None}
    claim_verification(db, data["id"], reviewer.id)
    result = can_claim_verification(db, data["id"], other.id)
    assert result["can_claim"] is False
    assert can_claim_verification(db, 9999, other.id)["reason"] == "Verification not found"


def test_concurrent_claims_single_winner(tmp_path, make):
    """Two sessions, both holding a stale PENDING view; only one claim lands."""
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    setup = Session()
    make.db = setup
    _, _, data = _requested(setup, make)
    first_id, second_id = make.verifier().id, make.verifier().id
    setup.close()

    s1, s2 = Session(), Session()
    try:
        assert s1.get(Verification, data["id"]).status == VerificationStatus.PENDING
        assert s2.get(Verification, data["id"]).status == VerificationStatus.PENDING

        won = claim_verification(s1, data["id"], first_id)
        with pytest.raises(ConflictError):
            claim_verification(s2, data["id"], second_id)

        check = Session()
        row = check.get(Verification, data["id"])
        assert won["reviewer_id"] == first_id
        assert row.reviewer_id == first_id
        assert row.status == VerificationStatus.ASSIGNED
        check.close()
    finally:
        s1.close()
        s2.close()
        engine.dispose()


# ═══════════════════════════════════════════════
#  START / SUBMIT
# ═══════════════════════════════════════════════

def test_only_assignee_can_start(db, make):
    _, _, data = _requested(db, make)
    reviewer, other = make.verifier(), make.verifier()
    claim_verification(db, data["id"], reviewer.id)
    with pytest.raises(AuthorizationError):
        start_review(db, data["id"], other.id)


def test_start_twice_conflicts(db, make):
    _, reviewer, vid = _in_progress(db, make)
    with pytest.raises(ConflictError):
        start_review(db, vid, reviewer.id)


def test_submit_completes_with_badges_and_report(db, make):
    _, reviewer, vid = _in_progress(db, make)
    review = ReviewSubmission(score=92, comments="Solid work.", recommendation="APPROVE",
                              badges=["documented", "quality"], improvements=["add tests"])
    data = submit_review(db, vid, reviewer.id, review)

    assert data["status"] == "COMPLETED"
    assert data["score"] == 92
    assert data["badges"] == ["quality", "documented"]
    assert data["report"]["kind"] == "manual_review"
    assert data["report"]["automated"]["passed"] is True
    assert data["report"]["review"]["reviewed_by"] == reviewer.id
    assert data["report"]["review"]["improvements"] == ["add tests"]
    assert data["requested_at"] <= data["assigned_at"] <= data["reviewed_at"] <= data["completed_at"]


def test_stored_report_parses_by_kind(db, make):
    _, reviewer, vid = _in_progress(db, make)
    v = db.get(Verification, vid)
    assert isinstance(parse_report(v.report), AutomatedReport)

    submit_review(db, vid, reviewer.id, GOOD_REVIEW)
    db.refresh(v)
    report = parse_report(v.report)
    assert isinstance(report, ManualReviewReport)
    assert report.automated.passed is True
    assert report.review.score == 90
    assert report.review.reviewed_by == reviewer.id


def test_parse_report_edges():
    assert parse_report(None) is None
    assert parse_report({}) is None
    with pytest.raises(pydantic.ValidationError):
        parse_report({"kind": "appraisal", "score": 50})


def test_low_score_gets_no_quality_badge(db, make):
    _, reviewer, vid = _in_progress(db, make)
    data = submit_review(db, vid, reviewer.id, {**GOOD_REVIEW, "score": 84})
    assert data["badges"] == []


def test_reject_without_comments_fails_before_state_change(db, make):
    _, reviewer, vid = _in_progress(db, make)
    with pytest.raises(ValidationError):
        submit_review(db, vid, reviewer.id, {"score": 40, "comments": "  ", "recommendation": "REJECT"})
    assert get_verification(db, vid)["status"] == "IN_PROGRESS"


@pytest.mark.parametrize("score", [-1, 101, 85.5, True, None, "90"])
def test_invalid_scores_rejected(db, make, score):
    _, reviewer, vid = _in_progress(db, make)
    with pytest.raises(ValidationError):
        submit_review(db, vid, reviewer.id, {**GOOD_REVIEW, "score": score})
    assert get_verification(db, vid)["status"] == "IN_PROGRESS"


def test_recommendation_required(db, make):
    _, reviewer, vid = _in_progress(db, make)
    with pytest.raises(ValidationError):
        submit_review(db, vid, reviewer.id, {"score": 70, "comments": "ok"})


def test_double_submission_conflicts(db, make):
    _, reviewer, vid = _in_progress(db, make)
    submit_review(db, vid, reviewer.id, GOOD_REVIEW)
    with pytest.raises(ConflictError):
        submit_review(db, vid, reviewer.id, GOOD_REVIEW)


def test_submit_requires_started_review(db, make):
    _, _, data = _requested(db, make)
    reviewer = make.verifier()
    claim_verification(db, data["id"], reviewer.id)
    with pytest.raises(ConflictError):
        submit_review(db, data["id"], reviewer.id, GOOD_REVIEW)


def test_fee_split_never_changes(db, make):
    _, reviewer, vid = _in_progress(db, make)
    data = submit_review(db, vid, reviewer.id, GOOD_REVIEW)
    assert data["fee"] == data["platform_share"] + data["reviewer_share"] == 5000


# ═══════════════════════════════════════════════
#  CANCEL & QUERIES
# ═══════════════════════════════════════════════

def test_requester_cancels_pending(db, make):
    seller, _, data = _requested(db, make)
    assert cancel_verification(db, data["id"], seller.id)["status"] == "CANCELLED"


def test_only_requester_cancels(db, make):
    _, _, data = _requested(db, make)
    other = make.seller()
    with pytest.raises(AuthorizationError):
        cancel_verification(db, data["id"], other.id)


def test_cannot_cancel_after_claim(db, make):
    seller, _, data = _requested(db, make)
    claim_verification(db, data["id"], make.verifier().id)
    with pytest.raises(ConflictError):
        cancel_verification(db, data["id"], seller.id)


def test_cancelled_product_can_be_requested_again(db, make):
    seller, product, data = _requested(db, make)
    cancel_verification(db, data["id"], seller.id)
    assert request_verification(db, product.id, seller.id, 1)["status"] == "PENDING"


def test_available_list_excludes_claimed_and_panel(db, make):
    _, _, first = _requested(db, make, level=1)
    _, _, second = _requested(db, make, level=2)
    _requested(db, make, level=3)
    claim_verification(db, first["id"], make.verifier().id)

    available = list_available_verifications(db)
    assert [v["id"] for v in available] == [second["id"]]
    assert list_available_verifications(db, level=1) == []


def test_reviewer_list_filters_by_status(db, make):
    _, reviewer, vid = _in_progress(db, make)
    assert [v["id"] for v in list_reviewer_verifications(db, reviewer.id)] == [vid]
    assert list_reviewer_verifications(db, reviewer.id, ["COMPLETED"]) == []
