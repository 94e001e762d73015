"""
Catalog Service - read-only access to products and license tier policies.
"""

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config import settings
from fulfillment.db.models import Product
from fulfillment.models.api import LicenseTier
from fulfillment.models.domain import LicensePolicy


def license_policy(tier: LicenseTier) -> LicensePolicy:
    """Access and download caps for a tier, from settings."""
    tier = LicenseTier(tier)
    return LicensePolicy(
        tier=tier,
        max_access=getattr(settings, f"license_{tier.value}_max_access"),
        max_downloads=getattr(settings, f"license_{tier.value}_max_downloads"),
    )


class CatalogService:
    """Product lookups for the fulfillment core."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_products(self, product_ids: Sequence[UUID]) -> dict[UUID, Product]:
        """Fetch several products at once, keyed by id. Missing ids are absent."""
        if not product_ids:
            return {}
        result = await self.session.execute(select(Product).where(Product.id.in_(product_ids)))
        return {p.id: p for p in result.scalars().all()}
