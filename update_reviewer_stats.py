"""
Recompute ReviewerStats for every verifier and expert from stored history.
Safe to run any time; one reviewer failing does not stop the others.
"""
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from config import LOG_LEVEL
from database import SessionLocal
from models import User
from services.earnings import update_stats
from services.identity import Capability, roles_with

logger = logging.getLogger("verimarket.update_reviewer_stats")


def refresh_all(db) -> dict:
    roles = set(roles_with(Capability.REVIEW_VERIFICATION)) | set(roles_with(Capability.EXPERT_REVIEW))
    reviewer_ids = [u.id for u in db.query(User).filter(User.role.in_(roles)).order_by(User.id).all()]

    updated, failed = 0, []
    for reviewer_id in reviewer_ids:
        try:
            stats = update_stats(db, reviewer_id)
            updated += 1
            logger.info(
                f"Reviewer {reviewer_id}: {stats['total_verifications']} reviews, "
                f"approval {stats['approval_rate']:.0%}, earnings {stats['total_earnings']}"
            )
        except SQLAlchemyError as exc:
            db.rollback()
            failed.append(reviewer_id)
            logger.error(f"Reviewer {reviewer_id}: stats refresh failed: {exc}")
    return {"total": len(reviewer_ids), "updated": updated, "failed": failed}


def main() -> int:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    db = SessionLocal()
    try:
        result = refresh_all(db)
    except SQLAlchemyError as exc:
        logger.error(f"Database unavailable: {exc}")
        return 1
    finally:
        db.close()
    logger.info(f"Updated {result['updated']}/{result['total']} reviewers ({len(result['failed'])} failed)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
