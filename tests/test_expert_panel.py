"""Level 3 four-expert panel."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import AuthorizationError, ConflictError, ValidationError
from models import ExpertReview, ExpertType, Verification, VerificationStatus
from schemas import ExpertPanelReport, parse_report
from services.expert_panel import (
    claim_expert_review, list_available_expert_reviews, panel_parent_for_update, panel_progress,
    start_expert_review, submit_expert_review,
)
from services.verification import (
    cancel_verification, claim_verification, get_verification, request_verification,
)


def _panel_request(db, make):
    seller = make.seller()
    product = make.product(seller)
    data = request_verification(db, product.id, seller.id, 3)
    slots = {er["expert_type"]: er["id"] for er in data["expert_reviews"]}
    return seller, data, slots


def _review(score, recommendation="APPROVE", comments="Reviewed in depth."):
    return {"score": score, "comments": comments, "recommendation": recommendation}


def _run_slot(db, slot_id, expert, score, recommendation="APPROVE"):
    claim_expert_review(db, slot_id, expert.id)
    start_expert_review(db, slot_id, expert.id)
    return submit_expert_review(db, slot_id, expert.id, _review(score, recommendation))


def test_panel_created_with_exact_fee_split(db, make):
    _, data, _ = _panel_request(db, make)

    assert data["fee"] == 50000
    assert data["platform_share"] == 15000
    assert data["reviewer_share"] == 35000
    assert data["reviewer_id"] is None
    assert [er["expert_type"] for er in data["expert_reviews"]] == [t.value for t in ExpertType]
    for er in data["expert_reviews"]:
        assert (er["fee"], er["platform_share"], er["expert_share"]) == (12500, 3750, 8750)
        assert er["status"] == "PENDING"


def test_parent_not_claimable_by_verifier(db, make):
    _, data, _ = _panel_request(db, make)
    with pytest.raises(ConflictError):
        claim_verification(db, data["id"], make.verifier().id)


def test_first_slot_assignment_moves_parent_to_assigned(db, make):
    _, data, slots = _panel_request(db, make)
    expert = make.expert(ExpertType.DESIGN)

    slot = claim_expert_review(db, slots["DESIGN"], expert.id)
    assert slot["status"] == "ASSIGNED"
    assert slot["assigned_at"] is not None

    parent = get_verification(db, data["id"])
    assert parent["status"] == "ASSIGNED"
    assert parent["assigned_at"] is not None
    assert parent["reviewer_id"] is None


def test_parent_assigned_at_set_once(db, make):
    _, data, slots = _panel_request(db, make)
    claim_expert_review(db, slots["DESIGN"], make.expert(ExpertType.DESIGN).id)
    first = get_verification(db, data["id"])["assigned_at"]
    claim_expert_review(db, slots["PLANNING"], make.expert(ExpertType.PLANNING).id)
    assert get_verification(db, data["id"])["assigned_at"] == first


def test_specialty_must_match_slot(db, make):
    _, _, slots = _panel_request(db, make)
    with pytest.raises(AuthorizationError):
        claim_expert_review(db, slots["DESIGN"], make.expert(ExpertType.DOMAIN).id)


def test_verifier_cannot_take_expert_slot(db, make):
    _, _, slots = _panel_request(db, make)
    with pytest.raises(AuthorizationError):
        claim_expert_review(db, slots["DESIGN"], make.verifier().id)


def test_generalist_takes_only_one_slot_per_panel(db, make):
    _, _, slots = _panel_request(db, make)
    generalist = make.expert()
    claim_expert_review(db, slots["DESIGN"], generalist.id)
    with pytest.raises(ConflictError):
        claim_expert_review(db, slots["PLANNING"], generalist.id)


def test_slot_claimed_once(db, make):
    _, _, slots = _panel_request(db, make)
    claim_expert_review(db, slots["DEVELOPMENT"], make.expert(ExpertType.DEVELOPMENT).id)
    with pytest.raises(ConflictError):
        claim_expert_review(db, slots["DEVELOPMENT"], make.expert(ExpertType.DEVELOPMENT).id)


def test_first_start_moves_parent_in_progress(db, make):
    _, data, slots = _panel_request(db, make)
    expert = make.expert(ExpertType.DESIGN)
    claim_expert_review(db, slots["DESIGN"], expert.id)
    start_expert_review(db, slots["DESIGN"], expert.id)
    assert get_verification(db, data["id"])["status"] == "IN_PROGRESS"


def test_only_assigned_expert_can_start(db, make):
    _, _, slots = _panel_request(db, make)
    claim_expert_review(db, slots["DESIGN"], make.expert(ExpertType.DESIGN).id)
    with pytest.raises(AuthorizationError):
        start_expert_review(db, slots["DESIGN"], make.expert(ExpertType.DESIGN).id)


def test_parent_completes_only_after_all_four(db, make):
    _, data, slots = _panel_request(db, make)
    experts = make.panel()
    scores = [80, 90, 70, 100]

    for expert_type, expert, score in list(zip(ExpertType, experts, scores))[:3]:
        _run_slot(db, slots[expert_type.value], expert, score)
        assert get_verification(db, data["id"])["status"] == "IN_PROGRESS"

    assert panel_progress(db, data["id"])["completed"] == 3

    _run_slot(db, slots["DOMAIN"], experts[3], scores[3])
    parent = get_verification(db, data["id"])
    assert parent["status"] == "COMPLETED"
    assert parent["score"] == 85
    assert "quality" in parent["badges"]
    assert parent["report"]["kind"] == "expert_panel"
    assert parent["report"]["aggregate_score"] == 85
    assert len(parent["report"]["experts"]) == 4
    assert parent["report"]["automated"]["passed"] is True
    assert parent["completed_at"] is not None


def test_reject_recommendation_does_not_block_panel(db, make):
    _, data, slots = _panel_request(db, make)
    experts = make.panel()
    recommendations = ["APPROVE", "REJECT", "APPROVE", "APPROVE"]

    for expert_type, expert, rec in zip(ExpertType, experts, recommendations):
        _run_slot(db, slots[expert_type.value], expert, 60, rec)

    parent = get_verification(db, data["id"])
    assert parent["status"] == "COMPLETED"
    assert parent["report"]["approve_count"] == 3
    assert parent["report"]["reject_count"] == 1
    assert parent["badges"] == []


def test_expert_review_validation_runs_first(db, make):
    _, _, slots = _panel_request(db, make)
    expert = make.expert(ExpertType.DESIGN)
    claim_expert_review(db, slots["DESIGN"], expert.id)
    start_expert_review(db, slots["DESIGN"], expert.id)

    with pytest.raises(ValidationError):
        submit_expert_review(db, slots["DESIGN"], expert.id, _review(30, "REJECT", comments=""))
    row = db.query(ExpertReview).filter(ExpertReview.id == slots["DESIGN"]).first()
    db.refresh(row)
    assert row.status.value == "IN_PROGRESS"


def test_expert_double_submission_conflicts(db, make):
    _, _, slots = _panel_request(db, make)
    expert = make.expert(ExpertType.PLANNING)
    _run_slot(db, slots["PLANNING"], expert, 75)
    with pytest.raises(ConflictError):
        submit_expert_review(db, slots["PLANNING"], expert.id, _review(75))


def test_cancel_panel_cancels_slots(db, make):
    seller, data, slots = _panel_request(db, make)
    cancelled = cancel_verification(db, data["id"], seller.id)

    assert cancelled["status"] == "CANCELLED"
    assert {er["status"] for er in cancelled["expert_reviews"]} == {"CANCELLED"}
    with pytest.raises(ConflictError):
        claim_expert_review(db, slots["DESIGN"], make.expert(ExpertType.DESIGN).id)


def test_available_slots_by_type(db, make):
    _, _, slots = _panel_request(db, make)
    claim_expert_review(db, slots["DESIGN"], make.expert(ExpertType.DESIGN).id)

    assert len(list_available_expert_reviews(db)) == 3
    assert list_available_expert_reviews(db, ExpertType.DESIGN) == []
    assert [r["id"] for r in list_available_expert_reviews(db, ExpertType.DOMAIN)] == [slots["DOMAIN"]]


def test_parent_read_takes_row_lock(db, make):
    _, data, _ = _panel_request(db, make)
    sql = str(panel_parent_for_update(db, data["id"]).statement.compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in sql


def test_last_two_slots_from_stale_sessions_complete_panel(tmp_path, make):
    """Two sessions each submit one of the final slots while holding an old view of the panel."""
    engine = create_engine(f"sqlite:///{tmp_path / 'panel.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    setup = Session()
    make.db = setup
    _, data, slots = _panel_request(setup, make)
    experts = make.panel()
    for expert_type, expert in list(zip(ExpertType, experts))[:2]:
        _run_slot(setup, slots[expert_type.value], expert, 80)
    for expert_type, expert in list(zip(ExpertType, experts))[2:]:
        claim_expert_review(setup, slots[expert_type.value], expert.id)
        start_expert_review(setup, slots[expert_type.value], expert.id)
    development_id, domain_id = experts[2].id, experts[3].id
    setup.close()

    s1, s2 = Session(), Session()
    try:
        assert panel_progress(s1, data["id"])["completed"] == 2
        assert panel_progress(s2, data["id"])["completed"] == 2

        submit_expert_review(s1, slots["DEVELOPMENT"], development_id, _review(90))
        submit_expert_review(s2, slots["DOMAIN"], domain_id, _review(90))

        check = Session()
        parent = check.get(Verification, data["id"])
        assert parent.status == VerificationStatus.COMPLETED
        assert parent.score == 85
        report = parse_report(parent.report)
        assert isinstance(report, ExpertPanelReport)
        assert [e.score for e in report.experts] == [80, 80, 90, 90]
        check.close()
    finally:
        s1.close()
        s2.close()
        engine.dispose()
