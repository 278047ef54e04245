"""
Automated listing checks (Level 0)
══════════════════════════════════════════════════
Weighted sanity checks over the catalog listing. Level 0 verifications are
decided by these alone; higher levels must pass them before a reviewer is
involved.
"""

import logging

from models import Product
from schemas import AutomatedReport, CheckResult
from database import utcnow

logger = logging.getLogger("verimarket.auto_checks")

MIN_TITLE_LENGTH = 10
MIN_DESCRIPTION_LENGTH = 50
MIN_DESCRIPTION_WORDS = 10

CHECK_WEIGHTS = {
    "title": 25,
    "description": 35,
    "category": 20,
    "price": 20,
}


def _check_title(product: Product) -> CheckResult:
    title = (product.name or "").strip()
    ok = len(title) >= MIN_TITLE_LENGTH
    return CheckResult(
        name="title",
        passed=ok,
        weight=CHECK_WEIGHTS["title"],
        message="Title OK" if ok else f"Title must be at least {MIN_TITLE_LENGTH} characters",
    )


def _check_description(product: Product) -> CheckResult:
    text = (product.description or "").strip()
    words = len(text.split())
    ok = len(text) >= MIN_DESCRIPTION_LENGTH and words >= MIN_DESCRIPTION_WORDS
    if ok:
        message = "Description OK"
    else:
        message = (
            f"Description must be at least {MIN_DESCRIPTION_LENGTH} characters "
            f"and {MIN_DESCRIPTION_WORDS} words (got {len(text)} chars, {words} words)"
        )
    return CheckResult(name="description", passed=ok, weight=CHECK_WEIGHTS["description"], message=message)


def _check_category(product: Product) -> CheckResult:
    ok = bool((product.category or "").strip())
    return CheckResult(
        name="category",
        passed=ok,
        weight=CHECK_WEIGHTS["category"],
        message="Category OK" if ok else "Category is required",
    )


def _check_price(product: Product) -> CheckResult:
    ok = product.price is not None and product.price > 0
    return CheckResult(
        name="price",
        passed=ok,
        weight=CHECK_WEIGHTS["price"],
        message="Price OK" if ok else "Price must be greater than zero",
    )


def run_automated_checks(product: Product) -> AutomatedReport:
    checks = [
        _check_title(product),
        _check_description(product),
        _check_category(product),
        _check_price(product),
    ]
    score = sum(c.weight for c in checks if c.passed)
    passed = all(c.passed for c in checks)
    logger.info(f"Automated checks for product {product.id}: score={score} passed={passed}")
    return AutomatedReport(checks=checks, score=score, passed=passed, checked_at=utcnow())
