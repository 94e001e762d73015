"""
Pricing - pure discount and fee arithmetic on integer minor units.

Everything here is side-effect free so it can be property-tested directly.
"""

from collections.abc import Iterable

from fulfillment.config import settings
from fulfillment.models.api import CouponScope, DiscountKind, ProductKind
from fulfillment.models.domain import PriceSplit


def percent_of(amount_minor: int, percent: int) -> int:
    """amount * percent / 100, rounded half-up to the cent."""
    return (amount_minor * percent + 50) // 100


def compute_discount(
    kind: DiscountKind,
    value: int,
    order_amount_minor: int,
    max_discount_minor: int | None = None,
) -> int:
    """
    Discount for an order amount.

    percentage: amount * value / 100, clamped to max_discount_minor when set.
    fixed: value, never more than the order amount.
    """
    if kind == DiscountKind.PERCENTAGE:
        discount = percent_of(order_amount_minor, value)
        if max_discount_minor is not None:
            discount = min(discount, max_discount_minor)
    else:
        discount = value
    return max(0, min(discount, order_amount_minor))


def fee_percent_for(kind: ProductKind) -> int:
    if kind == ProductKind.SERVICE:
        return settings.platform_fee_percent_services
    return settings.platform_fee_percent_goods


def split_line_price(price_minor: int, kind: ProductKind) -> PriceSplit:
    """Split a line price into platform fee and creator payout."""
    fee = percent_of(price_minor, fee_percent_for(kind))
    return PriceSplit(
        price_minor=price_minor,
        platform_fee_minor=fee,
        creator_payout_minor=price_minor - fee,
    )


def resolve_scope(kinds: Iterable[ProductKind]) -> CouponScope:
    """Coupon scope of a cart. Mixed carts only match `all` coupons."""
    distinct = set(kinds)
    if distinct == {ProductKind.GOOD}:
        return CouponScope.GOODS
    if distinct == {ProductKind.SERVICE}:
        return CouponScope.SERVICES
    return CouponScope.ALL


def format_minor(amount_minor: int, currency: str = "USD") -> str:
    """Human form of a minor-unit amount, e.g. 1050 -> '$10.50'."""
    symbol = "$" if currency.upper() == "USD" else f"{currency.upper()} "
    return f"{symbol}{amount_minor // 100}.{amount_minor % 100:02d}"
