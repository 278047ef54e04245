"""
Monthly settlement job.
Run on the 1st of each month (cron) to settle the previous month.

Usage:
    python monthly_settlement.py                                   # everyone, last month
    python monthly_settlement.py 42                                # seller 42, last month
    python monthly_settlement.py 7 --owner-type reviewer --period 2026-09

Exits 1 only when the run itself cannot happen (bad arguments, database
unreachable). Individual owner failures are reported and exit 0.
"""
import argparse
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from config import LOG_LEVEL
from database import Base, SessionLocal, engine
from errors import ServiceError
from models import OwnerType
from services.settlement_batch import run_monthly_settlement, run_settlement_for_owner

logger = logging.getLogger("verimarket.monthly_settlement")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Create monthly settlements")
    parser.add_argument("owner_id", nargs="?", type=int, help="settle a single owner only")
    parser.add_argument("--owner-type", choices=["seller", "reviewer"], default="seller")
    parser.add_argument("--period", help="month to settle, YYYY-MM (default: previous month)")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    try:
        Base.metadata.create_all(bind=engine)
        db = SessionLocal()
    except SQLAlchemyError as exc:
        logger.error(f"Database unavailable: {exc}")
        return 1

    try:
        if args.owner_id is not None:
            outcome = run_settlement_for_owner(
                db, args.owner_id, OwnerType(args.owner_type.upper()), args.period,
            )
            logger.info(f"Result: {outcome.model_dump_json()}")
        else:
            if args.period:
                logger.error("--period requires an owner_id; the full run always settles the previous month")
                return 1
            report = run_monthly_settlement(db)
            logger.info(
                f"Monthly settlement complete: {report.total_created} created, {report.total_failed} failed"
            )
    except ServiceError as exc:
        logger.error(f"Settlement run aborted: {exc.message}")
        return 1
    except SQLAlchemyError as exc:
        logger.error(f"Settlement run aborted, database error: {exc}")
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
