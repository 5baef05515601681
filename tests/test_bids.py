from decimal import Decimal

import pytest

from bids import (
    bid_idempotency_key,
    compute_min_next_bid,
    from_cents,
    is_part_eligible,
    normalize_auction_bid_amount,
    rank_submissions,
    rarity_tier_id,
    select_winning_submission,
    to_cents,
)
from errors import AmountTooLarge, InvalidAmount, ValidationError


class TestMinNextBid:
    def test_five_percent_over_current(self):
        assert compute_min_next_bid(100) == Decimal("105.00")

    @pytest.mark.parametrize("current", [0, -5, None, "abc", float("nan"), float("inf"), True])
    def test_floor_of_one_for_missing_or_invalid(self, current):
        assert compute_min_next_bid(current) == Decimal("1.00")

    def test_small_values_never_drop_below_one(self):
        assert compute_min_next_bid("0.10") == Decimal("1.00")

    @pytest.mark.parametrize("current", ["1.00", "3.33", "19.99", "104.99", "777.77", "999999.99"])
    def test_rounds_up_to_the_cent(self, current):
        result = compute_min_next_bid(current)
        assert result >= Decimal(current) * Decimal("1.05")
        assert result == result.quantize(Decimal("0.01"))
        assert result - Decimal(current) * Decimal("1.05") < Decimal("0.01")

    def test_custom_increment(self):
        assert compute_min_next_bid(200, increment_bps=1_000) == Decimal("220.00")


class TestNormalizeAmount:
    @pytest.mark.parametrize("raw", [0, -1, "", "ten", None, float("nan"), float("inf"), "Infinity", False])
    def test_invalid(self, raw):
        with pytest.raises(InvalidAmount, match="Enter a valid bid amount."):
            normalize_auction_bid_amount(raw)

    def test_too_many_decimals(self):
        with pytest.raises(InvalidAmount, match="up to 2 decimal places"):
            normalize_auction_bid_amount("10.005")

    def test_trailing_zeros_are_fine(self):
        assert normalize_auction_bid_amount("105.000") == Decimal("105.00")

    def test_float_input_keeps_its_cents(self):
        assert normalize_auction_bid_amount(104.99) == Decimal("104.99")

    def test_float_noise_is_tolerated(self):
        assert normalize_auction_bid_amount(0.1 + 0.2) == Decimal("0.30")
        assert normalize_auction_bid_amount(1.1 * 3) == Decimal("3.30")

    def test_sub_cent_noise_does_not_make_a_zero_bid(self):
        with pytest.raises(InvalidAmount, match="Enter a valid bid amount."):
            normalize_auction_bid_amount("0.0000001")

    def test_ceiling(self):
        assert normalize_auction_bid_amount(1_000_000) == Decimal("1000000.00")
        with pytest.raises(AmountTooLarge, match="1,000,000 FLUX or less"):
            normalize_auction_bid_amount("1000000.01")

    def test_huge_values_are_rejected_cleanly(self):
        with pytest.raises(AmountTooLarge):
            normalize_auction_bid_amount("1e40")

    def test_errors_are_validation_errors(self):
        assert issubclass(InvalidAmount, ValidationError)
        assert InvalidAmount("x").status_code == 400


def test_cents_conversion():
    assert to_cents(Decimal("104.99")) == 10_499
    assert from_cents(10_499) == Decimal("104.99")
    assert from_cents(0) == Decimal("0.00")


def test_idempotency_key_is_deterministic():
    key = bid_idempotency_key("0xABCDEF", 7, Decimal("105"))
    assert key == "bid:0xabcdef:7:105.00"
    assert key == bid_idempotency_key("0xabcdef", 7, Decimal("105.00"))


class TestRarity:
    def test_tier_ids(self):
        assert rarity_tier_id("Common") == 1
        assert rarity_tier_id("Rare") == 3
        assert rarity_tier_id("Quantum") == 8

    def test_unknown(self):
        with pytest.raises(ValidationError):
            rarity_tier_id("Shiny")

    def test_eligibility(self):
        assert is_part_eligible({"is_locked": 0, "rarity_tier_id": 3})
        assert not is_part_eligible({"is_locked": 0, "rarity_tier_id": 2})
        assert not is_part_eligible({"is_locked": 1, "rarity_tier_id": 8})


class TestRanking:
    def test_tier_then_value_then_submission_order(self):
        subs = [
            {"id": 1, "rarity_tier_id": 4, "part_value": 900},
            {"id": 2, "rarity_tier_id": 5, "part_value": 10},
            {"id": 3, "rarity_tier_id": 5, "part_value": 50},
            {"id": 4, "rarity_tier_id": 5, "part_value": 50},
        ]
        assert [s["id"] for s in rank_submissions(subs)] == [3, 4, 2, 1]

    def test_order_of_input_does_not_matter(self):
        a = {"id": 1, "rarity_tier_id": 4, "part_value": 500}
        b = {"id": 2, "rarity_tier_id": 5, "part_value": 100}
        assert select_winning_submission([a, b])["id"] == 2
        assert select_winning_submission([b, a])["id"] == 2

    def test_nothing_eligible(self):
        assert select_winning_submission([]) is None
        assert select_winning_submission([{"id": 1, "rarity_tier_id": 2, "part_value": 1}]) is None
