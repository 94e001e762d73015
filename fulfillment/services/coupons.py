"""
Coupon Service - validation, race-safe redemption accounting, admin CRUD.

NO DICTIONARIES - All operations use strongly typed domain models.

validate_coupon is read-only. record_usage is the only writer of used_count
and does it in one conditional UPDATE, so concurrent redemptions can never
push used_count past usage_limit.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.db.models import Coupon, CouponUsage
from fulfillment.exceptions import (
    CouponLimitReachedError,
    CouponRejectedError,
    DuplicateCouponCodeError,
    ResourceNotFoundError,
)
from fulfillment.models.api import CouponScope, DiscountKind
from fulfillment.models.domain import CouponData, CouponQuote, NewCoupon
from fulfillment.observability.logging import get_logger
from fulfillment.observability.metrics import metrics
from fulfillment.services.pricing import compute_discount, format_minor

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class CouponService:
    """Coupon validation and redemption."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def validate_coupon(
        self,
        user_id: UUID,
        code: str,
        order_amount_minor: int,
        scope: CouponScope = CouponScope.ALL,
        product_ids: list[UUID] | None = None,
    ) -> CouponQuote:
        """
        Price a coupon against an order amount without consuming it.

        Checks run in a fixed order and the first failure wins.

        Raises:
            CouponRejectedError: denial is one of not_found, inactive,
                not_started, expired, usage_limit_reached,
                per_user_limit_reached, scope_mismatch, product_not_eligible,
                below_minimum
        """
        try:
            coupon = await self._find_by_code(code)
            if coupon is None:
                raise CouponRejectedError("not_found", "Invalid coupon code")

            self._check_window(coupon, _utc_now())

            if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
                raise CouponRejectedError(
                    "usage_limit_reached", "This coupon has reached its usage limit"
                )

            user_uses = await self._count_user_usages(coupon.id, user_id)
            if user_uses >= coupon.per_user_limit:
                raise CouponRejectedError(
                    "per_user_limit_reached", "You have already used this coupon"
                )

            if coupon.scope != CouponScope.ALL and coupon.scope != scope:
                raise CouponRejectedError(
                    "scope_mismatch", f"This coupon is only valid for {coupon.scope.value}"
                )

            if coupon.product_ids and product_ids:
                allowed = set(coupon.product_ids)
                if any(pid not in allowed for pid in product_ids):
                    raise CouponRejectedError(
                        "product_not_eligible",
                        "This coupon does not apply to every item in your cart",
                    )

            if order_amount_minor < coupon.min_order_minor:
                raise CouponRejectedError(
                    "below_minimum",
                    f"Minimum order amount is {format_minor(coupon.min_order_minor)}",
                )
        except CouponRejectedError as exc:
            metrics.record_coupon("validate", exc.denial)
            logger.info("coupon_rejected", code=code.upper(), user_id=str(user_id), denial=exc.denial)
            raise

        discount = compute_discount(
            coupon.discount_kind,
            coupon.discount_value,
            order_amount_minor,
            coupon.max_discount_minor,
        )
        metrics.record_coupon("validate", "valid")

        return CouponQuote(
            coupon_id=coupon.id,
            code=coupon.code,
            discount_kind=coupon.discount_kind,
            discount_value=coupon.discount_value,
            order_amount_minor=order_amount_minor,
            discount_minor=discount,
            final_amount_minor=order_amount_minor - discount,
        )

    async def record_usage(
        self, coupon_id: UUID, user_id: UUID, order_id: UUID, discount_minor: int
    ) -> int:
        """
        Consume one use of a coupon for a paid order.

        Runs inside the caller's transaction and does not commit.

        Returns:
            The coupon's used_count after the increment

        Raises:
            CouponLimitReachedError: the conditional increment matched no row
        """
        stmt = (
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
            )
            .values(used_count=Coupon.used_count + 1, updated_at=_utc_now())
            .returning(Coupon.used_count)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        used_count = result.scalar_one_or_none()

        if used_count is None:
            metrics.record_coupon("redeem", "limit_reached")
            logger.warning(
                "coupon_limit_race_lost", coupon_id=str(coupon_id), order_id=str(order_id)
            )
            raise CouponLimitReachedError(coupon_id)

        self.session.add(
            CouponUsage(
                coupon_id=coupon_id,
                user_id=user_id,
                order_id=order_id,
                discount_minor=discount_minor,
            )
        )
        await self.session.flush()

        metrics.record_coupon("redeem", "recorded")
        logger.info(
            "coupon_usage_recorded",
            coupon_id=str(coupon_id),
            order_id=str(order_id),
            used_count=used_count,
        )
        return int(used_count)

    async def create_coupon(self, admin_id: UUID, new: NewCoupon) -> CouponData:
        """
        Create a coupon.

        Raises:
            DuplicateCouponCodeError: code already exists
        """
        code = new.code.strip().upper()
        if await self._find_by_code(code) is not None:
            raise DuplicateCouponCodeError(code)

        now = _utc_now()
        coupon = Coupon(
            id=uuid4(),
            code=code,
            description=new.description,
            discount_kind=new.discount_kind,
            discount_value=new.discount_value,
            min_order_minor=new.min_order_minor,
            max_discount_minor=new.max_discount_minor,
            usage_limit=new.usage_limit,
            used_count=0,
            per_user_limit=new.per_user_limit,
            scope=new.scope,
            product_ids=list(new.product_ids) if new.product_ids else None,
            starts_at=new.starts_at or now,
            expires_at=new.expires_at,
            is_active=True,
            created_by=admin_id,
            created_at=now,
        )
        self.session.add(coupon)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise DuplicateCouponCodeError(code) from exc

        await self.session.commit()
        logger.info("coupon_created", coupon_id=str(coupon.id), code=code, admin_id=str(admin_id))
        return self._coupon_to_domain(coupon)

    async def list_coupons(
        self, page: int = 1, limit: int = 20, active: bool | None = None
    ) -> tuple[list[CouponData], int]:
        """Newest first, with the total count for pagination."""
        query = select(Coupon)
        count_query = select(func.count()).select_from(Coupon)
        if active is not None:
            query = query.where(Coupon.is_active == active)
            count_query = count_query.where(Coupon.is_active == active)

        total = (await self.session.execute(count_query)).scalar_one()
        result = await self.session.execute(
            query.order_by(Coupon.created_at.desc()).offset((page - 1) * limit).limit(limit)
        )
        return [self._coupon_to_domain(c) for c in result.scalars().all()], int(total)

    async def deactivate_coupon(self, coupon_id: UUID) -> CouponData:
        """
        Disable a coupon. Past usages are untouched.

        Raises:
            ResourceNotFoundError: coupon doesn't exist
        """
        coupon = await self.session.get(Coupon, coupon_id)
        if coupon is None:
            raise ResourceNotFoundError("coupon", coupon_id)

        coupon.is_active = False
        await self.session.commit()
        logger.info("coupon_deactivated", coupon_id=str(coupon_id))
        return self._coupon_to_domain(coupon)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_by_code(self, code: str) -> Coupon | None:
        result = await self.session.execute(
            select(Coupon).where(Coupon.code == code.strip().upper())
        )
        return result.scalar_one_or_none()

    async def _count_user_usages(self, coupon_id: UUID, user_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(CouponUsage)
            .where(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        )
        return int(result.scalar_one())

    @staticmethod
    def _check_window(coupon: Coupon, now: datetime) -> None:
        if not coupon.is_active:
            raise CouponRejectedError("inactive", "This coupon is no longer active")
        if now < coupon.starts_at:
            raise CouponRejectedError("not_started", "This coupon is not yet active")
        if now > coupon.expires_at:
            raise CouponRejectedError("expired", "This coupon has expired")

    @staticmethod
    def _coupon_to_domain(coupon: Coupon) -> CouponData:
        return CouponData(
            coupon_id=coupon.id,
            code=coupon.code,
            description=coupon.description,
            discount_kind=DiscountKind(coupon.discount_kind),
            discount_value=coupon.discount_value,
            min_order_minor=coupon.min_order_minor,
            max_discount_minor=coupon.max_discount_minor,
            usage_limit=coupon.usage_limit,
            used_count=coupon.used_count,
            per_user_limit=coupon.per_user_limit,
            scope=CouponScope(coupon.scope),
            product_ids=tuple(coupon.product_ids) if coupon.product_ids else None,
            starts_at=coupon.starts_at,
            expires_at=coupon.expires_at,
            is_active=coupon.is_active,
        )
