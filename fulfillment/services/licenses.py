"""
License Service - issuance, access accounting, and revocation of entitlements.

NO DICTIONARIES - All operations use strongly typed domain models.

Issue, consume and revoke run inside the caller's transaction and never
commit; the order, delivery and refund services own the commit boundary.
Counters only move through conditional UPDATEs guarded by is_active and the
cap, so concurrent requests cannot overshoot max_access or max_downloads.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.db.models import License, Order, OrderItem, Product
from fulfillment.exceptions import (
    EntitlementDeniedError,
    NotOwnerError,
    ResourceNotFoundError,
)
from fulfillment.models.api import LINK_DELIVERY_TYPES, DeliveryType, LicenseTier
from fulfillment.models.domain import EntitlementSnapshot, LicenseData
from fulfillment.observability.logging import get_logger
from fulfillment.observability.metrics import metrics
from fulfillment.services.catalog import license_policy

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def generate_license_key() -> str:
    """FLW-<uuid4 upper>."""
    return f"FLW-{str(uuid4()).upper()}"


class LicenseService:
    """Entitlement store keyed by (buyer, product)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def issue(self, order: Order, item: OrderItem, tier: LicenseTier) -> License:
        """
        Materialize the license for one paid goods line. Does not commit.

        The (order_id, order_item_id) unique constraint rejects a second
        license for the same line.
        """
        policy = license_policy(tier)
        license_row = License(
            license_key=generate_license_key(),
            product_id=item.product_id,
            order_id=order.id,
            order_item_id=item.id,
            buyer_id=order.buyer_id,
            tier=policy.tier,
            access_count=0,
            max_access=policy.max_access,
            download_count=0,
            max_downloads=policy.max_downloads,
            is_active=True,
        )
        self.session.add(license_row)
        await self.session.flush()

        metrics.licenses_issued_total.labels(tier=policy.tier.value).inc()
        logger.info(
            "license_issued",
            license_id=str(license_row.id),
            order_id=str(order.id),
            product_id=str(item.product_id),
            tier=policy.tier.value,
        )
        return license_row

    async def consume_access(self, buyer_id: UUID, product_id: UUID) -> EntitlementSnapshot:
        """
        Count one access against the buyer's license for a product. Does not commit.

        Raises:
            EntitlementDeniedError: no_license, access_exhausted or inactive
        """
        license_row = await self._find_for_buyer_product(buyer_id, product_id)
        if license_row is None:
            raise EntitlementDeniedError("no_license")
        return await self.consume_license(license_row)

    async def consume_license(self, license_row: License) -> EntitlementSnapshot:
        """
        Count one access against this exact license. Does not commit.

        Raises:
            EntitlementDeniedError: access_exhausted or inactive
        """
        product_id = license_row.product_id
        if license_row.access_count >= license_row.max_access:
            raise EntitlementDeniedError("access_exhausted")
        if not license_row.is_active:
            raise EntitlementDeniedError("inactive")

        now = _utc_now()
        stmt = (
            update(License)
            .where(
                License.id == license_row.id,
                License.is_active.is_(True),
                License.access_count < License.max_access,
            )
            .values(access_count=License.access_count + 1, last_accessed_at=now, updated_at=now)
            .returning(License.access_count)
            .execution_options(synchronize_session=False)
        )
        access_count = (await self.session.execute(stmt)).scalar_one_or_none()
        if access_count is None:
            raise EntitlementDeniedError("access_exhausted")

        product = await self.session.get(Product, product_id)
        if product is None:
            raise ResourceNotFoundError("product", product_id)

        delivery_type = DeliveryType(product.delivery_type)
        is_link = delivery_type in LINK_DELIVERY_TYPES

        logger.info(
            "license_access_consumed",
            license_id=str(license_row.id),
            access_count=access_count,
            max_access=license_row.max_access,
        )
        return EntitlementSnapshot(
            license_id=license_row.id,
            product_id=product_id,
            delivery_type=delivery_type,
            delivery_url=product.delivery_url if is_link else None,
            requires_credential=not is_link,
            access_count=int(access_count),
        )

    async def has_active_license(self, buyer_id: UUID, product_id: UUID) -> bool:
        """Review-eligibility gate."""
        result = await self.session.execute(
            select(
                exists().where(
                    License.buyer_id == buyer_id,
                    License.product_id == product_id,
                    License.is_active.is_(True),
                )
            )
        )
        return bool(result.scalar())

    async def owned_product_ids(self, buyer_id: UUID, product_ids: Iterable[UUID]) -> set[UUID]:
        """Subset of product_ids the buyer already holds an active license for."""
        ids = list(product_ids)
        if not ids:
            return set()
        result = await self.session.execute(
            select(License.product_id).where(
                License.buyer_id == buyer_id,
                License.product_id.in_(ids),
                License.is_active.is_(True),
            )
        )
        return set(result.scalars().all())

    async def revoke(self, order_id: UUID) -> list[UUID]:
        """
        Deactivate every license issued for an order. Does not commit.

        Counters are left as they are and rows are never deleted.
        """
        stmt = (
            update(License)
            .where(License.order_id == order_id, License.is_active.is_(True))
            .values(is_active=False, updated_at=_utc_now())
            .returning(License.id)
            .execution_options(synchronize_session=False)
        )
        revoked = list((await self.session.execute(stmt)).scalars().all())

        if revoked:
            metrics.licenses_revoked_total.inc(len(revoked))
        logger.info("licenses_revoked", order_id=str(order_id), count=len(revoked))
        return revoked

    async def get_license(self, buyer_id: UUID, license_id: UUID) -> License:
        """
        Load a license the buyer owns.

        Raises:
            ResourceNotFoundError: no such license
            NotOwnerError: license belongs to someone else
        """
        license_row = await self.session.get(License, license_id)
        if license_row is None:
            raise ResourceNotFoundError("license", license_id)
        if license_row.buyer_id != buyer_id:
            raise NotOwnerError("license", buyer_id)
        return license_row

    async def list_licenses(self, buyer_id: UUID) -> list[LicenseData]:
        result = await self.session.execute(
            select(License).where(License.buyer_id == buyer_id).order_by(License.created_at.desc())
        )
        return [license_to_domain(lic) for lic in result.scalars().all()]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_for_buyer_product(self, buyer_id: UUID, product_id: UUID) -> License | None:
        """Prefer an active license; fall back to the newest inactive one."""
        result = await self.session.execute(
            select(License)
            .where(License.buyer_id == buyer_id, License.product_id == product_id)
            .order_by(License.is_active.desc(), License.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


def license_to_domain(license_row: License) -> LicenseData:
    return LicenseData(
        license_id=license_row.id,
        license_key=license_row.license_key,
        product_id=license_row.product_id,
        order_id=license_row.order_id,
        buyer_id=license_row.buyer_id,
        tier=LicenseTier(license_row.tier),
        access_count=license_row.access_count,
        max_access=license_row.max_access,
        download_count=license_row.download_count,
        max_downloads=license_row.max_downloads,
        is_active=license_row.is_active,
        last_accessed_at=license_row.last_accessed_at,
        created_at=license_row.created_at,
    )
