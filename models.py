import enum
import json

from sqlalchemy import Column, Integer, String, Float, DateTime, Text, Boolean, ForeignKey, Index, UniqueConstraint, Enum as SAEnum, text
from sqlalchemy.orm import relationship

from database import Base, utcnow


def _enum_column(enum_cls, **kwargs):
    return Column(SAEnum(enum_cls, native_enum=False, length=30, validate_strings=True), **kwargs)


# ════════════════════════════════════════════════
#  ENUMS
# ════════════════════════════════════════════════
class UserRole(str, enum.Enum):
    BUYER = "BUYER"
    SELLER = "SELLER"
    VERIFIER = "VERIFIER"
    EXPERT = "EXPERT"
    ADMIN = "ADMIN"


class ExpertType(str, enum.Enum):
    DESIGN = "DESIGN"
    PLANNING = "PLANNING"
    DEVELOPMENT = "DEVELOPMENT"
    DOMAIN = "DOMAIN"


class VerificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class ExpertReviewStatus(str, enum.Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Recommendation(str, enum.Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class OwnerType(str, enum.Enum):
    SELLER = "SELLER"
    REVIEWER = "REVIEWER"


class SettlementStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PayoutStatus(str, enum.Enum):
    PENDING = "PENDING"
    INCLUDED_IN_SETTLEMENT = "INCLUDED_IN_SETTLEMENT"
    PAID = "PAID"


UNVERIFIED_LEVEL = -1


# ════════════════════════════════════════════════
#  USER (identity / role directory)
# ════════════════════════════════════════════════
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    email = Column(String(200), unique=True, nullable=False, index=True)
    role = _enum_column(UserRole, nullable=False, default=UserRole.BUYER)
    expert_type = _enum_column(ExpertType, nullable=True)  # set for EXPERT users with a specialty
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    products = relationship("Product", back_populates="seller")
    notifications = relationship("Notification", back_populates="user")


# ════════════════════════════════════════════════
#  CATALOG
# ════════════════════════════════════════════════
class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    price = Column(Integer, nullable=False, default=0)  # minor units

    # ── Verification state (mutated by approval / rejection) ──
    verification_level = Column(Integer, nullable=False, default=UNVERIFIED_LEVEL)
    verification_score = Column(Float, nullable=True)
    verification_badges_json = Column(Text, nullable=True)  # JSON array

    created_at = Column(DateTime, default=utcnow)

    seller = relationship("User", back_populates="products")
    orders = relationship("Order", back_populates="product")

    @property
    def verification_badges(self) -> list:
        return json.loads(self.verification_badges_json) if self.verification_badges_json else []

    @verification_badges.setter
    def verification_badges(self, badges):
        self.verification_badges_json = json.dumps(list(badges or []))


# ════════════════════════════════════════════════
#  ORDERS (payment collaborator output, trusted as-is)
# ════════════════════════════════════════════════
class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    amount = Column(Integer, nullable=False)         # gross, minor units
    platform_fee = Column(Integer, nullable=False, default=0)
    seller_amount = Column(Integer, nullable=False)  # owner-facing net
    currency = Column(String(10), nullable=False, default="USD")

    status = _enum_column(OrderStatus, nullable=False, default=OrderStatus.PENDING)
    paid_at = Column(DateTime, nullable=True, index=True)
    refunded_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)

    product = relationship("Product", back_populates="orders")


# ════════════════════════════════════════════════
#  VERIFICATION
# ════════════════════════════════════════════════
_ACTIVE_VERIFICATION = text("status IN ('PENDING', 'ASSIGNED', 'IN_PROGRESS', 'COMPLETED')")


class Verification(Base):
    __tablename__ = "verifications"
    # At most one open verification per product
    __table_args__ = (
        Index(
            "uq_active_verification_per_product", "product_id",
            unique=True,
            sqlite_where=_ACTIVE_VERIFICATION,
            postgresql_where=_ACTIVE_VERIFICATION,
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    requester_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    reviewer_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    level = Column(Integer, nullable=False)  # 0-3
    status = _enum_column(VerificationStatus, nullable=False, default=VerificationStatus.PENDING, index=True)

    # ── Fee split (fee == platform_share + reviewer_share) ──
    fee = Column(Integer, nullable=False, default=0)
    platform_share = Column(Integer, nullable=False, default=0)
    reviewer_share = Column(Integer, nullable=False, default=0)

    # ── Outcome ──
    score = Column(Float, nullable=True)  # 0-100
    badges_json = Column(Text, nullable=True)          # JSON array
    report_json = Column(Text, nullable=True)          # tagged report variant
    admin_decision_json = Column(Text, nullable=True)  # AdminDecision

    # ── Timeline (each set at most once) ──
    requested_at = Column(DateTime, nullable=False, default=utcnow)
    assigned_at = Column(DateTime, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    product = relationship("Product")
    requester = relationship("User", foreign_keys=[requester_id])
    reviewer = relationship("User", foreign_keys=[reviewer_id])
    expert_reviews = relationship("ExpertReview", back_populates="verification", order_by="ExpertReview.id")
    reviewer_payout = relationship("ReviewerPayout", back_populates="verification", uselist=False)

    @property
    def badges(self) -> list:
        return json.loads(self.badges_json) if self.badges_json else []

    @badges.setter
    def badges(self, badges):
        self.badges_json = json.dumps(list(badges or []))

    @property
    def report(self):
        return json.loads(self.report_json) if self.report_json else None

    @property
    def admin_decision(self):
        return json.loads(self.admin_decision_json) if self.admin_decision_json else None


class ExpertReview(Base):
    """One specialist slot of a Level-3 expert panel."""
    __tablename__ = "expert_reviews"
    __table_args__ = (UniqueConstraint("verification_id", "expert_type", name="uq_expert_review_slot"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    verification_id = Column(Integer, ForeignKey("verifications.id"), nullable=False, index=True)
    expert_type = _enum_column(ExpertType, nullable=False)
    expert_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    status = _enum_column(ExpertReviewStatus, nullable=False, default=ExpertReviewStatus.PENDING)

    fee = Column(Integer, nullable=False, default=0)
    platform_share = Column(Integer, nullable=False, default=0)
    expert_share = Column(Integer, nullable=False, default=0)

    score = Column(Float, nullable=True)
    recommendation = _enum_column(Recommendation, nullable=True)
    feedback = Column(Text, nullable=True)
    report_json = Column(Text, nullable=True)

    requested_at = Column(DateTime, nullable=False, default=utcnow)
    assigned_at = Column(DateTime, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    verification = relationship("Verification", back_populates="expert_reviews")
    expert = relationship("User")
    expert_payout = relationship("ExpertPayout", back_populates="expert_review", uselist=False)


# ════════════════════════════════════════════════
#  PAYOUTS
# ════════════════════════════════════════════════
class ReviewerPayout(Base):
    __tablename__ = "reviewer_payouts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reviewer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    verification_id = Column(Integer, ForeignKey("verifications.id"), nullable=False, unique=True)
    amount = Column(Integer, nullable=False)
    status = _enum_column(PayoutStatus, nullable=False, default=PayoutStatus.PENDING, index=True)
    settlement_id = Column(Integer, ForeignKey("settlements.id"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    verification = relationship("Verification", back_populates="reviewer_payout")
    settlement = relationship("Settlement", back_populates="reviewer_payouts")


class ExpertPayout(Base):
    __tablename__ = "expert_payouts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    expert_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    expert_review_id = Column(Integer, ForeignKey("expert_reviews.id"), nullable=False, unique=True)
    amount = Column(Integer, nullable=False)
    status = _enum_column(PayoutStatus, nullable=False, default=PayoutStatus.PENDING, index=True)
    settlement_id = Column(Integer, ForeignKey("settlements.id"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    expert_review = relationship("ExpertReview", back_populates="expert_payout")
    settlement = relationship("Settlement", back_populates="expert_payouts")


# ════════════════════════════════════════════════
#  SETTLEMENTS
# ════════════════════════════════════════════════
class Settlement(Base):
    __tablename__ = "settlements"
    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", "period_start", "period_end", name="uq_settlement_owner_period"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    owner_type = _enum_column(OwnerType, nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    period_start = Column(DateTime, nullable=False)  # inclusive
    period_end = Column(DateTime, nullable=False)    # exclusive

    total_amount = Column(Integer, nullable=False, default=0)
    platform_fee = Column(Integer, nullable=False, default=0)
    payout_amount = Column(Integer, nullable=False, default=0)
    verification_earnings = Column(Integer, nullable=False, default=0)
    verification_count = Column(Integer, nullable=False, default=0)
    currency = Column(String(10), nullable=False, default="USD")

    status = _enum_column(SettlementStatus, nullable=False, default=SettlementStatus.PENDING, index=True)
    payout_method = Column(String(30), nullable=True)  # bank_transfer, connect_transfer
    payout_reference = Column(String(100), nullable=True)
    payout_date = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    owner = relationship("User")
    items = relationship("SettlementItem", back_populates="settlement", cascade="all, delete-orphan")
    reviewer_payouts = relationship("ReviewerPayout", back_populates="settlement")
    expert_payouts = relationship("ExpertPayout", back_populates="settlement")


class SettlementItem(Base):
    __tablename__ = "settlement_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    settlement_id = Column(Integer, ForeignKey("settlements.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    payout_amount = Column(Integer, nullable=False)

    settlement = relationship("Settlement", back_populates="items")


# ════════════════════════════════════════════════
#  REVIEWER STATS (derived, recomputable)
# ════════════════════════════════════════════════
class ReviewerStats(Base):
    __tablename__ = "reviewer_stats"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reviewer_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    total_verifications = Column(Integer, nullable=False, default=0)
    total_earnings = Column(Integer, nullable=False, default=0)
    approval_rate = Column(Float, nullable=False, default=0.0)
    average_score_given = Column(Float, nullable=False, default=0.0)
    average_review_time_hours = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ════════════════════════════════════════════════
#  NOTIFICATION
# ════════════════════════════════════════════════
class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    notification_type = Column(String(50), nullable=False)  # verification, settlement, system
    is_read = Column(Boolean, default=False)
    link = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="notifications")
