"""
Settlement Calculator
══════════════════════════════════════════════════
Builds one Settlement per owner per half-open period [period_start, period_end).

Seller path:   paid orders in the window become SettlementItems;
                payout = total sales − platform fees. Refunds in the window are
                reported in the calculation summary but NOT subtracted.
Reviewer path: sales fields are zero; PENDING reviewer / expert payouts
                created in the window are bound to the settlement in the same
                transaction (PENDING → INCLUDED_IN_SETTLEMENT).

Payout lifecycle:
  PENDING ──process──▶ PROCESSING ──paid──▶ PAID
     │                     └──failed──▶ FAILED
     └──cancel──▶ CANCELLED
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import DEFAULT_CURRENCY
from database import transaction, utcnow
from errors import ConflictError, IdempotencySkip, NotFoundError, ValidationError
from models import (
    ExpertPayout, Order, OrderStatus, OwnerType, PayoutStatus, Product,
    ReviewerPayout, Settlement, SettlementItem, SettlementStatus,
)
from services.earnings import month_bounds, payout_to_dict

logger = logging.getLogger("verimarket.settlement")


def settlement_to_dict(s: Settlement, include_items: bool = False) -> dict:
    data = {
        "id": s.id,
        "owner_type": s.owner_type.value,
        "owner_id": s.owner_id,
        "period_start": s.period_start.isoformat(),
        "period_end": s.period_end.isoformat(),
        "total_amount": s.total_amount,
        "platform_fee": s.platform_fee,
        "payout_amount": s.payout_amount,
        "verification_earnings": s.verification_earnings,
        "verification_count": s.verification_count,
        "currency": s.currency,
        "status": s.status.value,
        "payout_method": s.payout_method,
        "payout_reference": s.payout_reference,
        "payout_date": s.payout_date.isoformat() if s.payout_date else None,
        "failure_reason": s.failure_reason,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }
    if include_items:
        data["items"] = [{
            "id": i.id,
            "order_id": i.order_id,
            "product_id": i.product_id,
            "amount": i.amount,
            "platform_fee": i.platform_fee,
            "payout_amount": i.payout_amount,
        } for i in s.items]
    return data


def get_settlement_or_404(db: Session, settlement_id: int) -> Settlement:
    s = db.query(Settlement).filter(Settlement.id == settlement_id).first()
    if not s:
        raise NotFoundError(f"Settlement {settlement_id} not found")
    return s


# ═══════════════════════════════════════════════
#  PERIOD GUARD
# ═══════════════════════════════════════════════

def _check_period(db: Session, owner_type: OwnerType, owner_id: int, period_start: datetime, period_end: datetime):
    if period_end <= period_start:
        raise ValidationError("period_end must be after period_start")

    existing = db.query(Settlement).filter(
        Settlement.owner_type == owner_type,
        Settlement.owner_id == owner_id,
        Settlement.period_start < period_end,
        Settlement.period_end > period_start,
    ).order_by(Settlement.id.asc()).all()
    for s in existing:
        if s.period_start == period_start and s.period_end == period_end:
            raise IdempotencySkip(
                f"Settlement already exists for {owner_type.value.lower()} {owner_id} in this period",
                existing_id=s.id,
            )
    if existing:
        raise ConflictError(
            f"Period overlaps existing settlement {existing[0].id} for {owner_type.value.lower()} {owner_id}"
        )


def _commit_new_settlement(db: Session, settlement: Settlement):
    """Commit, turning a unique-constraint race on (owner, period) into IdempotencySkip."""
    key = (settlement.owner_type, settlement.owner_id, settlement.period_start, settlement.period_end)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = db.query(Settlement).filter(
            Settlement.owner_type == key[0],
            Settlement.owner_id == key[1],
            Settlement.period_start == key[2],
            Settlement.period_end == key[3],
        ).first()
        raise IdempotencySkip(
            "Settlement was created concurrently for this period",
            existing_id=winner.id if winner else None,
        )
    except Exception:
        db.rollback()
        raise


# ═══════════════════════════════════════════════
#  SELLER SETTLEMENT
# ═══════════════════════════════════════════════

def _seller_orders(db: Session, seller_id: int, period_start: datetime, period_end: datetime):
    paid = db.query(Order).join(Product, Order.product_id == Product.id).filter(
        Product.seller_id == seller_id,
        Order.status == OrderStatus.PAID,
        Order.paid_at >= period_start,
        Order.paid_at < period_end,
    ).order_by(Order.paid_at.asc(), Order.id.asc()).all()
    refunded = db.query(Order).join(Product, Order.product_id == Product.id).filter(
        Product.seller_id == seller_id,
        Order.status == OrderStatus.REFUNDED,
        Order.refunded_at >= period_start,
        Order.refunded_at < period_end,
    ).all()
    return paid, refunded


def calculate_settlement(db: Session, owner_id: int, period_start: datetime, period_end: datetime) -> dict:
    """Create the seller settlement for one period and return it with a calculation summary."""
    _check_period(db, OwnerType.SELLER, owner_id, period_start, period_end)
    paid, refunded = _seller_orders(db, owner_id, period_start, period_end)

    total_sales = sum(o.amount for o in paid)
    platform_fee = sum(o.platform_fee for o in paid)
    refund_amount = sum(o.amount for o in refunded)
    net_amount = total_sales - platform_fee

    settlement = Settlement(
        owner_type=OwnerType.SELLER,
        owner_id=owner_id,
        period_start=period_start,
        period_end=period_end,
        total_amount=total_sales,
        platform_fee=platform_fee,
        payout_amount=net_amount,
        verification_earnings=0,
        verification_count=0,
        currency=paid[0].currency if paid else DEFAULT_CURRENCY,
        status=SettlementStatus.PENDING,
        created_at=utcnow(),
    )
    for order in paid:
        expected = order.amount - order.platform_fee
        if order.seller_amount != expected:
            logger.warning(
                f"Order {order.id}: seller_amount {order.seller_amount} != amount - platform_fee {expected}; "
                f"using seller_amount"
            )
        settlement.items.append(SettlementItem(
            order_id=order.id,
            product_id=order.product_id,
            amount=order.amount,
            platform_fee=order.platform_fee,
            payout_amount=order.seller_amount,
        ))
    db.add(settlement)
    _commit_new_settlement(db, settlement)
    db.refresh(settlement)

    logger.info(
        f"Seller settlement {settlement.id} for {owner_id}: sales={total_sales} fee={platform_fee} "
        f"payout={net_amount} orders={len(paid)} refunds={len(refunded)}"
    )
    return {
        "settlement": settlement_to_dict(settlement, include_items=True),
        "calculation": {
            "total_sales": total_sales,
            "platform_fee": platform_fee,
            "refund_amount": refund_amount,
            "net_amount": net_amount,
            "order_count": len(paid),
            "refund_count": len(refunded),
        },
    }


# ═══════════════════════════════════════════════
#  REVIEWER SETTLEMENT
# ═══════════════════════════════════════════════

def _pending_payouts_in_window(db: Session, reviewer_id: int, period_start: datetime, period_end: datetime):
    reviewer_rows = db.query(ReviewerPayout).filter(
        ReviewerPayout.reviewer_id == reviewer_id,
        ReviewerPayout.status == PayoutStatus.PENDING,
        ReviewerPayout.created_at >= period_start,
        ReviewerPayout.created_at < period_end,
    ).all()
    expert_rows = db.query(ExpertPayout).filter(
        ExpertPayout.expert_id == reviewer_id,
        ExpertPayout.status == PayoutStatus.PENDING,
        ExpertPayout.created_at >= period_start,
        ExpertPayout.created_at < period_end,
    ).all()
    return reviewer_rows, expert_rows


def build_reviewer_settlement(db: Session, reviewer_id: int, period_start: datetime, period_end: datetime) -> dict:
    """Settle a reviewer's PENDING payouts in the window and bind them to the new settlement."""
    _check_period(db, OwnerType.REVIEWER, reviewer_id, period_start, period_end)
    reviewer_rows, expert_rows = _pending_payouts_in_window(db, reviewer_id, period_start, period_end)
    if not reviewer_rows and not expert_rows:
        raise ValidationError(f"No pending payouts for reviewer {reviewer_id} in this period")

    earnings = sum(p.amount for p in reviewer_rows) + sum(p.amount for p in expert_rows)
    count = len(reviewer_rows) + len(expert_rows)

    settlement = Settlement(
        owner_type=OwnerType.REVIEWER,
        owner_id=reviewer_id,
        period_start=period_start,
        period_end=period_end,
        total_amount=0,
        platform_fee=0,
        payout_amount=earnings,
        verification_earnings=earnings,
        verification_count=count,
        currency=DEFAULT_CURRENCY,
        status=SettlementStatus.PENDING,
        created_at=utcnow(),
    )
    try:
        db.add(settlement)
        db.flush()
        bound = _bind_payouts(db, ReviewerPayout, [p.id for p in reviewer_rows], settlement.id)
        bound += _bind_payouts(db, ExpertPayout, [p.id for p in expert_rows], settlement.id)
        if bound != count:
            raise ConflictError(
                f"Payouts for reviewer {reviewer_id} changed while settling ({bound}/{count} bound)"
            )
    except IntegrityError:
        db.rollback()
        raise IdempotencySkip("Settlement was created concurrently for this period")
    except Exception:
        db.rollback()
        raise
    _commit_new_settlement(db, settlement)
    db.refresh(settlement)

    logger.info(f"Reviewer settlement {settlement.id} for {reviewer_id}: earnings={earnings} payouts={count}")
    return {
        "settlement": settlement_to_dict(settlement),
        "calculation": {
            "verification_earnings": earnings,
            "verification_count": count,
            "reviewer_payout_ids": [p.id for p in reviewer_rows],
            "expert_payout_ids": [p.id for p in expert_rows],
        },
    }


def _bind_payouts(db: Session, model, ids: list, settlement_id: int) -> int:
    if not ids:
        return 0
    return db.query(model).filter(
        model.id.in_(ids),
        model.status == PayoutStatus.PENDING,
        model.settlement_id.is_(None),
    ).update({
        model.status: PayoutStatus.INCLUDED_IN_SETTLEMENT,
        model.settlement_id: settlement_id,
    }, synchronize_session=False)


# ═══════════════════════════════════════════════
#  ESTIMATE
# ═══════════════════════════════════════════════

def get_current_month_estimate(db: Session, owner_id: int, now: Optional[datetime] = None) -> dict:
    """Month-to-date projection. Read-only."""
    now = now or utcnow()
    period_start, _ = month_bounds(now)

    paid, _ = _seller_orders(db, owner_id, period_start, now)
    reviewer_rows, expert_rows = _pending_payouts_in_window(db, owner_id, period_start, now)

    total_sales = sum(o.amount for o in paid)
    platform_fee = sum(o.platform_fee for o in paid)
    verification_earnings = sum(p.amount for p in reviewer_rows) + sum(p.amount for p in expert_rows)

    return {
        "period_start": period_start.isoformat(),
        "period_end": now.isoformat(),
        "total_sales": total_sales,
        "platform_fee": platform_fee,
        "net_amount": total_sales - platform_fee + verification_earnings,
        "verification_earnings": verification_earnings,
        "verification_count": len(reviewer_rows) + len(expert_rows),
        "order_count": len(paid),
        "currency": paid[0].currency if paid else DEFAULT_CURRENCY,
    }


# ═══════════════════════════════════════════════
#  PAYOUT LIFECYCLE
# ═══════════════════════════════════════════════

def _move_status(db: Session, settlement_id: int, from_status: SettlementStatus, values: dict) -> Settlement:
    s = get_settlement_or_404(db, settlement_id)
    current = s.status
    with transaction(db):
        moved = db.query(Settlement).filter(
            Settlement.id == settlement_id,
            Settlement.status == from_status,
        ).update(values, synchronize_session=False)
        if moved != 1:
            raise ConflictError(
                f"Settlement {settlement_id} is {current.value}, expected {from_status.value}"
            )
    db.refresh(s)
    return s


def process_settlement_payout(db: Session, settlement_id: int, payout_method: str, payout_reference: Optional[str] = None) -> dict:
    if payout_method not in ("bank_transfer", "connect_transfer"):
        raise ValidationError(f"Invalid payout method: {payout_method}")
    s = _move_status(db, settlement_id, SettlementStatus.PENDING, {
        Settlement.status: SettlementStatus.PROCESSING,
        Settlement.payout_method: payout_method,
        Settlement.payout_reference: payout_reference,
    })
    logger.info(f"Settlement {settlement_id} processing via {payout_method}")
    return settlement_to_dict(s)


def mark_settlement_paid(db: Session, settlement_id: int) -> dict:
    s = get_settlement_or_404(db, settlement_id)
    with transaction(db):
        moved = db.query(Settlement).filter(
            Settlement.id == settlement_id,
            Settlement.status == SettlementStatus.PROCESSING,
        ).update({
            Settlement.status: SettlementStatus.PAID,
            Settlement.payout_date: utcnow(),
        }, synchronize_session=False)
        if moved != 1:
            raise ConflictError(f"Settlement {settlement_id} is {s.status.value}, expected PROCESSING")
        for model in (ReviewerPayout, ExpertPayout):
            db.query(model).filter(
                model.settlement_id == settlement_id,
                model.status == PayoutStatus.INCLUDED_IN_SETTLEMENT,
            ).update({model.status: PayoutStatus.PAID}, synchronize_session=False)
    db.refresh(s)
    logger.info(f"Settlement {settlement_id} paid: {s.payout_amount} {s.currency}")
    return settlement_to_dict(s)


def mark_settlement_failed(db: Session, settlement_id: int, reason: Optional[str] = None) -> dict:
    s = _move_status(db, settlement_id, SettlementStatus.PROCESSING, {
        Settlement.status: SettlementStatus.FAILED,
        Settlement.failure_reason: reason or "Payout failed",
    })
    logger.warning(f"Settlement {settlement_id} payout failed: {s.failure_reason}")
    return settlement_to_dict(s)


def cancel_settlement(db: Session, settlement_id: int) -> dict:
    """PENDING → CANCELLED. Bound payouts stay bound to the cancelled settlement."""
    s = _move_status(db, settlement_id, SettlementStatus.PENDING, {
        Settlement.status: SettlementStatus.CANCELLED,
    })
    logger.info(f"Settlement {settlement_id} cancelled")
    return settlement_to_dict(s)


# ═══════════════════════════════════════════════
#  READS
# ═══════════════════════════════════════════════

def get_settlement_details(db: Session, settlement_id: int) -> dict:
    s = get_settlement_or_404(db, settlement_id)
    data = settlement_to_dict(s, include_items=True)
    data["owner"] = {"id": s.owner.id, "name": s.owner.name, "email": s.owner.email} if s.owner else None
    data["payouts"] = [payout_to_dict(p) for p in list(s.reviewer_payouts) + list(s.expert_payouts)]
    return data


def list_settlements_for_owner(db: Session, owner_id: int, owner_type: OwnerType = OwnerType.SELLER, limit: int = 10) -> list:
    settlements = db.query(Settlement).filter(
        Settlement.owner_type == owner_type,
        Settlement.owner_id == owner_id,
    ).order_by(Settlement.period_start.desc()).limit(limit).all()
    return [settlement_to_dict(s) for s in settlements]


def _owner_filter(q, owner):
    if owner is None:
        return q
    owner_type, owner_id = owner
    return q.filter(Settlement.owner_type == owner_type, Settlement.owner_id == owner_id)


def get_settlement_summary(db: Session, owner=None, now: Optional[datetime] = None) -> dict:
    """Per-status totals, last 12 months and revenue breakdown. ``owner`` is (OwnerType, id) or None for all."""
    settlements = _owner_filter(db.query(Settlement), owner).all()

    by_status = {}
    for status in SettlementStatus:
        rows = [s for s in settlements if s.status == status]
        by_status[status.value.lower()] = {
            "amount": sum(s.payout_amount for s in rows),
            "count": len(rows),
        }

    product_sales = sum(s.total_amount for s in settlements)
    verification_earnings = sum(s.verification_earnings for s in settlements)

    return {
        **by_status,
        "monthly_data": get_monthly_settlement_data(db, owner, now),
        "revenue_breakdown": {
            "product_sales": product_sales,
            "verification_earnings": verification_earnings,
            "total_revenue": product_sales + verification_earnings,
        },
    }


def get_monthly_settlement_data(db: Session, owner=None, now: Optional[datetime] = None) -> list:
    now = now or utcnow()
    months = []
    year, month = now.year, now.month
    for _ in range(12):
        months.append(datetime(year, month, 1))
        year, month = (year - 1, 12) if month == 1 else (year, month - 1)
    months.reverse()

    result = []
    for start in months:
        _, end = month_bounds(start)
        rows = _owner_filter(db.query(Settlement), owner).filter(
            Settlement.period_start >= start,
            Settlement.period_start < end,
        ).all()
        result.append({
            "month": start.strftime("%Y-%m"),
            "total_amount": sum(s.total_amount for s in rows),
            "platform_fee": sum(s.platform_fee for s in rows),
            "payout_amount": sum(s.payout_amount for s in rows),
            "verification_earnings": sum(s.verification_earnings for s in rows),
            "order_count": sum(len(s.items) for s in rows),
        })
    return result
