"""
Notification collaborator.
Writes an in-app Notification row and, when NOTIFY_WEBHOOK_URL is set, posts
the same event to the webhook. Delivery is best-effort: failures are logged,
never raised.
"""
import logging

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import NOTIFICATION_CONFIG
from models import Notification, Settlement

logger = logging.getLogger("verimarket.notifications")


def create_notification(db: Session, user_id: int, title: str, message: str,
                        notification_type: str = "system", link: str = None) -> Notification:
    notif = Notification(
        user_id=user_id,
        title=title,
        message=message,
        notification_type=notification_type,
        link=link,
    )
    db.add(notif)
    db.commit()
    db.refresh(notif)
    return notif


def send_webhook(payload: dict) -> bool:
    """POST ``payload`` to the configured webhook. Returns True on a 2xx response."""
    url = NOTIFICATION_CONFIG["webhook_url"]
    if not url:
        return False
    try:
        with httpx.Client(timeout=NOTIFICATION_CONFIG["timeout_seconds"]) as client:
            resp = client.post(url, json=payload)
            resp.raise_for_status()
            return True
    except httpx.HTTPError as exc:
        logger.warning(f"Webhook delivery failed for {payload.get('event')}: {exc}")
        return False


def build_settlement_message(settlement: Settlement) -> str:
    amount = settlement.payout_amount / 100
    if settlement.total_amount:
        return (
            f"Your settlement for {settlement.period_start:%B %Y} is ready. "
            f"Total sales: {settlement.currency} {settlement.total_amount / 100:,.2f}, "
            f"net payout: {settlement.currency} {amount:,.2f}."
        )
    return (
        f"Your settlement for {settlement.period_start:%B %Y} is ready. "
        f"Verification earnings: {settlement.currency} {amount:,.2f} "
        f"from {settlement.verification_count} review(s)."
    )


def notify_settlement(db: Session, owner_id: int, settlement_id: int) -> bool:
    """Tell an owner their settlement was created. Never raises."""
    try:
        settlement = db.query(Settlement).filter(Settlement.id == settlement_id).first()
        if not settlement:
            logger.warning(f"Cannot notify owner {owner_id}: settlement {settlement_id} not found")
            return False
        create_notification(
            db,
            user_id=owner_id,
            title="Settlement ready",
            message=build_settlement_message(settlement),
            notification_type="settlement",
            link=f"/settlements/{settlement_id}",
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(f"Failed to notify owner {owner_id} about settlement {settlement_id}: {exc}")
        return False

    send_webhook({
        "event": "settlement.created",
        "owner_id": owner_id,
        "settlement_id": settlement_id,
    })
    return True
