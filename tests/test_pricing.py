"""
Tests for pricing arithmetic.

Property tests for discount and fee math on integer minor units.
"""

from hypothesis import given
from hypothesis import strategies as st

from fulfillment.models.api import CouponScope, DiscountKind, ProductKind
from fulfillment.services.pricing import (
    compute_discount,
    format_minor,
    percent_of,
    resolve_scope,
    split_line_price,
)

amounts = st.integers(min_value=0, max_value=10_000_000)
percents = st.integers(min_value=1, max_value=100)
fixed_values = st.integers(min_value=1, max_value=10_000_000)
caps = st.one_of(st.none(), st.integers(min_value=0, max_value=10_000_000))


class TestComputeDiscount:
    """Discount computation."""

    @given(amount=amounts, value=percents, cap=caps)
    def test_percentage_final_is_amount_minus_discount(self, amount, value, cap):
        discount = compute_discount(DiscountKind.PERCENTAGE, value, amount, cap)
        final = amount - discount

        assert 0 <= discount <= amount
        assert final >= 0
        assert final + discount == amount
        if cap is not None:
            assert discount <= cap

    @given(amount=amounts, value=fixed_values)
    def test_fixed_discount_never_exceeds_amount(self, amount, value):
        discount = compute_discount(DiscountKind.FIXED, value, amount)

        assert discount == min(value, amount)
        assert amount - discount >= 0

    def test_save20_on_one_hundred_dollars_is_capped(self):
        """20% of $100 is $20, clamped to the $10 cap."""
        discount = compute_discount(DiscountKind.PERCENTAGE, 20, 10000, 1000)

        assert discount == 1000
        assert 10000 - discount == 9000

    def test_percentage_rounds_half_up(self):
        # 15% of 1.50 is 22.5 cents
        assert compute_discount(DiscountKind.PERCENTAGE, 15, 150) == 23

    def test_fixed_larger_than_order_is_clamped(self):
        assert compute_discount(DiscountKind.FIXED, 5000, 1200) == 1200


class TestSplitLinePrice:
    """Platform fee / creator payout split."""

    @given(price=amounts, kind=st.sampled_from(list(ProductKind)))
    def test_split_sums_to_price(self, price, kind):
        split = split_line_price(price, kind)

        assert split.platform_fee_minor + split.creator_payout_minor == price
        assert split.platform_fee_minor >= 0
        assert split.creator_payout_minor >= 0

    def test_goods_use_thirty_percent(self):
        split = split_line_price(1000, ProductKind.GOOD)

        assert split.platform_fee_minor == 300
        assert split.creator_payout_minor == 700

    def test_services_use_twenty_percent(self):
        split = split_line_price(5000, ProductKind.SERVICE)

        assert split.platform_fee_minor == 1000
        assert split.creator_payout_minor == 4000


class TestHelpers:
    def test_percent_of(self):
        assert percent_of(999, 30) == 300
        assert percent_of(0, 30) == 0

    def test_resolve_scope(self):
        assert resolve_scope([ProductKind.GOOD, ProductKind.GOOD]) == CouponScope.GOODS
        assert resolve_scope([ProductKind.SERVICE]) == CouponScope.SERVICES
        assert resolve_scope([ProductKind.GOOD, ProductKind.SERVICE]) == CouponScope.ALL
        assert resolve_scope([]) == CouponScope.ALL

    def test_format_minor(self):
        assert format_minor(1050) == "$10.50"
        assert format_minor(5, "eur") == "EUR 0.05"
