"""
Verification Fee Policy
══════════════════════════════════════════════════
Fee schedule per verification level and the platform / reviewer split.

All amounts are integer minor currency units. The platform keeps 30% of a
verification fee (rounded half-up); the reviewer gets the rest, so the two
shares always sum to the fee.
"""

from decimal import Decimal, ROUND_HALF_UP

from errors import ValidationError

PLATFORM_COMMISSION_RATE = Decimal("0.30")

LEVEL_FEES = {
    0: 0,       # automated checks only
    1: 5000,    # basic manual review
    2: 15000,   # detailed manual review
    3: 50000,   # four-expert panel
}

PANEL_SIZE = 4


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_split(fee: int) -> dict:
    """Split a verification fee into platform and reviewer shares."""
    if fee is None or int(fee) != fee:
        raise ValidationError("Fee must be an integer amount in minor units")
    if fee < 0:
        raise ValidationError("Fee cannot be negative")

    platform_share = _round_half_up(Decimal(int(fee)) * PLATFORM_COMMISSION_RATE)
    return {
        "platform_share": platform_share,
        "reviewer_share": int(fee) - platform_share,
    }


def fee_for_level(level: int) -> int:
    if level not in LEVEL_FEES:
        raise ValidationError(f"Unknown verification level: {level}")
    return LEVEL_FEES[level]


def split_panel_fee(fee: int, parts: int = PANEL_SIZE) -> list:
    """Divide ``fee`` into ``parts`` integer slices summing exactly to ``fee``."""
    if parts <= 0:
        raise ValidationError("Panel must have at least one part")
    if fee < 0:
        raise ValidationError("Fee cannot be negative")
    base, remainder = divmod(int(fee), parts)
    return [base + 1 if i < remainder else base for i in range(parts)]


def calculate_platform_fee(amount: int, rate) -> int:
    """Per-order platform fee, rounded half-up."""
    if amount < 0:
        raise ValidationError("Amount cannot be negative")
    return _round_half_up(Decimal(int(amount)) * Decimal(str(rate)))
