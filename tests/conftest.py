"""
Pytest configuration and shared fixtures for VeriMarket tests.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("NOTIFY_WEBHOOK_URL", "")

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import AUTH_CONFIG
from database import Base, utcnow
from models import (
    ExpertType, Order, OrderStatus, PayoutStatus, Product, ReviewerPayout,
    User, UserRole, Verification, VerificationStatus,
)

LONG_DESCRIPTION = (
    "A fully documented analytics dashboard template with charts, filters, "
    "exports and a responsive layout for small teams."
)

SEPT_START = datetime(2026, 9, 1)
OCT_START = datetime(2026, 10, 1)


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ═══════════════════════════════════════════════
#  FACTORIES
# ═══════════════════════════════════════════════

class Factory:
    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self):
        self._seq += 1
        return self._seq

    def user(self, role=UserRole.SELLER, expert_type=None, name=None, is_active=True) -> User:
        n = self._next()
        user = User(
            name=name or f"{role.value.title()} {n}",
            email=f"user{n}@example.com",
            role=role,
            expert_type=expert_type,
            is_active=is_active,
        )
        self.db.add(user)
        self.db.commit()
        return user

    def seller(self):
        return self.user(UserRole.SELLER)

    def verifier(self):
        return self.user(UserRole.VERIFIER)

    def admin(self):
        return self.user(UserRole.ADMIN)

    def expert(self, expert_type=None):
        return self.user(UserRole.EXPERT, expert_type=expert_type)

    def panel(self):
        """One expert per specialty, in slot order."""
        return [self.expert(t) for t in ExpertType]

    def product(self, seller, **overrides) -> Product:
        fields = dict(
            seller_id=seller.id,
            name="Analytics Dashboard Pro",
            description=LONG_DESCRIPTION,
            category="templates",
            price=29000,
        )
        fields.update(overrides)
        product = Product(**fields)
        self.db.add(product)
        self.db.commit()
        return product

    def order(self, product, amount, platform_fee, paid_at=None, status=OrderStatus.PAID,
              seller_amount=None, refunded_at=None, currency="USD") -> Order:
        order = Order(
            product_id=product.id,
            amount=amount,
            platform_fee=platform_fee,
            seller_amount=amount - platform_fee if seller_amount is None else seller_amount,
            currency=currency,
            status=status,
            paid_at=paid_at,
            refunded_at=refunded_at,
        )
        self.db.add(order)
        self.db.commit()
        return order

    def completed_verification(self, seller=None, reviewer=None, level=1, score=90, product=None) -> Verification:
        """A verification sitting in COMPLETED, ready for an admin decision."""
        seller = seller or self.seller()
        reviewer = reviewer or self.verifier()
        product = product or self.product(seller)
        now = utcnow()
        v = Verification(
            product_id=product.id,
            requester_id=seller.id,
            reviewer_id=reviewer.id,
            level=level,
            status=VerificationStatus.COMPLETED,
            fee=5000,
            platform_share=1500,
            reviewer_share=3500,
            score=score,
            requested_at=now - timedelta(hours=5),
            assigned_at=now - timedelta(hours=4),
            reviewed_at=now,
            completed_at=now,
        )
        v.badges = ["quality"] if score >= 85 else []
        self.db.add(v)
        self.db.commit()
        return v

    def payout(self, reviewer, amount=3500, created_at=None, status=PayoutStatus.PENDING) -> ReviewerPayout:
        v = self.completed_verification(reviewer=reviewer)
        v.status = VerificationStatus.APPROVED
        payout = ReviewerPayout(
            reviewer_id=reviewer.id,
            verification_id=v.id,
            amount=amount,
            status=status,
            created_at=created_at or utcnow(),
        )
        self.db.add(payout)
        self.db.commit()
        return payout


@pytest.fixture
def make(db):
    return Factory(db)


def token_for(user) -> str:
    payload = {
        "sub": str(user.id),
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return jwt.encode(payload, AUTH_CONFIG["secret_key"], algorithm=AUTH_CONFIG["algorithm"])


@pytest.fixture
def auth_header():
    def _header(user):
        return {"Authorization": f"Bearer {token_for(user)}"}
    return _header
