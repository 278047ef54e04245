from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from models import ExpertType, OwnerType, Recommendation


# ═══════════════════════════════════════════════
#  REQUEST BODIES
# ═══════════════════════════════════════════════

class VerificationRequest(BaseModel):
    product_id: int
    level: int = Field(..., ge=0, le=3)


class ReviewSubmission(BaseModel):
    """Manual review payload. Range and presence rules are enforced by the service layer."""
    score: int
    comments: str = ""
    recommendation: Recommendation
    badges: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)

    @field_validator("badges", "improvements")
    @classmethod
    def strip_blank(cls, v: List[str]) -> List[str]:
        return [item.strip() for item in v if item and item.strip()]


class AssignRequest(BaseModel):
    user_id: int


class ApproveRequest(BaseModel):
    comment: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class SettlementRunRequest(BaseModel):
    owner_id: int
    owner_type: OwnerType = OwnerType.SELLER
    period: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}$")  # YYYY-MM


class PayoutProcessRequest(BaseModel):
    payout_method: str = Field(..., pattern="^(bank_transfer|connect_transfer)$")
    payout_reference: Optional[str] = None


class PayoutFailureRequest(BaseModel):
    reason: str = Field(..., min_length=1)


# ═══════════════════════════════════════════════
#  REPORT VARIANTS (stored on Verification.report_json)
# ═══════════════════════════════════════════════

class CheckResult(BaseModel):
    name: str
    passed: bool
    weight: int
    message: str


class AutomatedReport(BaseModel):
    kind: Literal["automated"] = "automated"
    checks: List[CheckResult]
    score: int
    passed: bool
    checked_at: datetime


class ManualReview(BaseModel):
    score: int
    comments: str
    recommendation: Recommendation
    badges: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    reviewed_by: int
    reviewed_at: datetime


class ManualReviewReport(BaseModel):
    kind: Literal["manual_review"] = "manual_review"
    automated: Optional[AutomatedReport] = None
    review: ManualReview


class ExpertSummary(BaseModel):
    expert_review_id: int
    expert_type: ExpertType
    expert_id: Optional[int] = None
    score: Optional[float] = None
    recommendation: Optional[Recommendation] = None
    feedback: Optional[str] = None


class ExpertPanelReport(BaseModel):
    kind: Literal["expert_panel"] = "expert_panel"
    automated: Optional[AutomatedReport] = None
    experts: List[ExpertSummary]
    aggregate_score: Optional[float] = None
    approve_count: int = 0
    reject_count: int = 0


VerificationReport = Annotated[
    Union[AutomatedReport, ManualReviewReport, ExpertPanelReport],
    Field(discriminator="kind"),
]


class ReportEnvelope(BaseModel):
    report: VerificationReport


def parse_report(data: Optional[dict]):
    """Stored report dict → its typed variant, picked by ``kind``."""
    if not data:
        return None
    return ReportEnvelope(report=data).report


class AdminDecision(BaseModel):
    action: Literal["APPROVED", "REJECTED"]
    comment: Optional[str] = None
    reason: Optional[str] = None
    decided_at: datetime


# ═══════════════════════════════════════════════
#  BATCH RUN REPORT
# ═══════════════════════════════════════════════

class UnitOutcome(BaseModel):
    owner_type: OwnerType
    owner_id: int
    status: Literal["created", "skipped", "failed"]
    settlement_id: Optional[int] = None
    error: Optional[str] = None


class CohortReport(BaseModel):
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[UnitOutcome] = Field(default_factory=list)

    def record(self, outcome: UnitOutcome) -> None:
        if outcome.status == "created":
            self.successful += 1
        elif outcome.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
            self.errors.append(outcome)


class BatchReport(BaseModel):
    period_start: datetime
    period_end: datetime
    sellers: CohortReport = Field(default_factory=CohortReport)
    reviewers: CohortReport = Field(default_factory=CohortReport)

    @property
    def total_created(self) -> int:
        return self.sellers.successful + self.reviewers.successful

    @property
    def total_failed(self) -> int:
        return self.sellers.failed + self.reviewers.failed
