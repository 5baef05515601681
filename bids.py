# bids.py
"""
NEBULA: bid & submission admission rules.

Pure functions: no I/O. The store layer (auctions.py) re-checks every rule
inside the write transaction; these are the single source of the numbers.
"""

from __future__ import annotations
from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_HALF_UP
from typing import Any, Iterable, Mapping, Optional, Sequence

from config import settings
from errors import AmountTooLarge, InvalidAmount, ValidationError

CENTS = Decimal("0.01")
ONE = Decimal("1")
BID_PRECISION_EPSILON = Decimal("0.000001")

RARITY_TIERS = [
    "Common",
    "Uncommon",
    "Rare",
    "Epic",
    "Legendary",
    "Mythic",
    "Celestial",
    "Quantum",
]


def rarity_tier_id(rarity: str) -> int:
    """1-based tier id for a rarity name (Common=1 ... Quantum=8)."""
    try:
        return RARITY_TIERS.index(rarity) + 1
    except ValueError:
        raise ValidationError(f"Unknown rarity tier: {rarity}")


def _to_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        # str() first so floats keep their short repr (104.99, not 104.989999...)
        d = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        return None
    return d if d.is_finite() else None


# =========================================================
# Money
# =========================================================
def to_cents(amount: Decimal) -> int:
    return int((amount / CENTS).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents or 0)) * CENTS).quantize(CENTS)


def round2_up(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_CEILING)


def compute_min_next_bid(current_highest_bid: Any, increment_bps: Optional[int] = None) -> Decimal:
    """
    Smallest acceptable next bid.

    1 when nothing valid has been bid yet; otherwise the current price raised
    by the minimum increment (5% by default), rounded up to whole cents so the
    floor never lands below current * 1.05.
    """
    current = _to_decimal(current_highest_bid)
    if current is None or current <= 0:
        return ONE.quantize(CENTS)
    bps = settings.AUCTION_MIN_INCREMENT_BPS if increment_bps is None else increment_bps
    raised = round2_up(current * (Decimal(10_000 + int(bps)) / Decimal(10_000)))
    return max(ONE.quantize(CENTS), raised)


def normalize_auction_bid_amount(raw: Any, max_bid: Optional[int] = None) -> Decimal:
    """Validate a client supplied bid and return it as a 2-decimal Decimal."""
    amount = _to_decimal(raw)
    if amount is None or amount <= 0:
        raise InvalidAmount("Enter a valid bid amount.")

    ceiling = settings.AUCTION_MAX_BID_FLUX if max_bid is None else max_bid
    try:
        normalized = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # too many digits to hold in cents at all
        raise AmountTooLarge(f"Bid must be {ceiling:,} FLUX or less.")

    # float noise (0.1 + 0.2) is tolerated, a real third decimal is not
    if abs(amount - normalized) > BID_PRECISION_EPSILON:
        raise InvalidAmount("Bids support up to 2 decimal places.")
    if normalized <= 0:
        raise InvalidAmount("Enter a valid bid amount.")

    if normalized > ceiling:
        raise AmountTooLarge(f"Bid must be {ceiling:,} FLUX or less.")
    return normalized


def bid_idempotency_key(wallet: str, round_id: int, amount: Decimal) -> str:
    return f"bid:{wallet.lower()}:{int(round_id)}:{amount.quantize(CENTS)}"


# =========================================================
# Submissions
# =========================================================
def is_part_eligible(part: Mapping[str, Any], min_tier: Optional[int] = None) -> bool:
    """Unlocked parts of the configured tier ("Rare") and above may be auctioned."""
    threshold = settings.AUCTION_MIN_RARITY_TIER if min_tier is None else min_tier
    return not bool(part["is_locked"]) and int(part["rarity_tier_id"]) >= threshold


def rank_submissions(submissions: Iterable[Mapping[str, Any]]) -> list:
    # tier desc, value desc, earliest submission first
    return sorted(
        submissions,
        key=lambda s: (-int(s["rarity_tier_id"]), -int(s["part_value"]), int(s["id"])),
    )


def select_winning_submission(
    submissions: Sequence[Mapping[str, Any]],
    min_tier: Optional[int] = None,
) -> Optional[Mapping[str, Any]]:
    threshold = settings.AUCTION_MIN_RARITY_TIER if min_tier is None else min_tier
    for sub in rank_submissions(submissions):
        if int(sub["rarity_tier_id"]) >= threshold:
            return sub
    return None
