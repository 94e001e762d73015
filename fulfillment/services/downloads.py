"""
Download Service - time-boxed, single-use delivery credentials.

NO DICTIONARIES - All operations use strongly typed domain models.

Only the SHA-256 of a token is persisted; the raw token is returned once
from issue() and never stored. Redemption is a compare-and-set on `used`,
so two concurrent redeems of the same token yield exactly one file.
"""

import hashlib
import secrets
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config import settings
from fulfillment.db.models import DownloadToken, License, Product
from fulfillment.exceptions import (
    ContentUnavailableError,
    DeliveryNotSupportedError,
    EntitlementDeniedError,
    FulfillmentError,
    ResourceNotFoundError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenNotFoundError,
)
from fulfillment.models.api import LINK_DELIVERY_TYPES, DeliveryType
from fulfillment.models.domain import (
    Delivery,
    DownloadCredential,
    EntitlementSnapshot,
    FileLocator,
)
from fulfillment.observability.logging import get_logger
from fulfillment.observability.metrics import metrics
from fulfillment.services.content_store import ContentStore
from fulfillment.services.licenses import LicenseService

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a raw download token."""
    return hashlib.sha256(token.encode()).hexdigest()


class DownloadService:
    """Issues and redeems download credentials."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.licenses = LicenseService(session)

    async def deliver(self, buyer_id: UUID, license_id: UUID) -> Delivery:
        """
        Deliver a purchased good: direct link for link products, a download
        credential for file products. Either way one access is counted.
        """
        license_row = await self.licenses.get_license(buyer_id, license_id)
        product = await self._get_product(license_row.product_id)

        if DeliveryType(product.delivery_type) in LINK_DELIVERY_TYPES:
            entitlement = await self.licenses.consume_license(license_row)
            await self.session.commit()
            metrics.record_download("link", "delivered")
            return Delivery(entitlement=entitlement)

        entitlement, credential = await self._issue(buyer_id, license_row, product, None)
        return Delivery(entitlement=entitlement, credential=credential)

    async def issue(
        self, buyer_id: UUID, license_id: UUID, expiry_minutes: int | None = None
    ) -> DownloadCredential:
        """
        Mint a download credential for a file_download product.

        Raises:
            DeliveryNotSupportedError: product is delivered by link
            EntitlementDeniedError: license cannot be used
        """
        license_row = await self.licenses.get_license(buyer_id, license_id)
        product = await self._get_product(license_row.product_id)
        _, credential = await self._issue(buyer_id, license_row, product, expiry_minutes)
        return credential

    async def redeem(self, token: str, content_store: ContentStore | None = None) -> FileLocator:
        """
        Consume a credential and return the file it unlocks.

        When a content store is given the file is resolved before commit, so a
        missing file leaves the token unused.

        Raises:
            TokenNotFoundError: unknown token
            TokenAlreadyUsedError: token was redeemed before
            TokenExpiredError: token is past its expiry
            EntitlementDeniedError: license inactive or download cap reached
            ContentUnavailableError: file cannot be located
        """
        now = _utc_now()
        row = await self._find_by_hash(hash_token(token))
        if row is None:
            metrics.record_download("redeem", "not_found")
            raise TokenNotFoundError()
        if row.used:
            metrics.record_download("redeem", "already_used")
            raise TokenAlreadyUsedError()
        if row.expires_at <= now:
            metrics.record_download("redeem", "expired")
            raise TokenExpiredError(row.expires_at)

        # rollback() expires every loaded row; only these are read past it
        token_id, license_id, product_id = row.id, row.license_id, row.product_id
        expires_at = row.expires_at

        try:
            claimed = await self.session.execute(
                update(DownloadToken)
                .where(
                    DownloadToken.id == token_id,
                    DownloadToken.used.is_(False),
                    DownloadToken.expires_at > now,
                )
                .values(used=True, used_at=now)
                .returning(DownloadToken.id)
                .execution_options(synchronize_session=False)
            )
            if claimed.scalar_one_or_none() is None:
                if expires_at <= _utc_now():
                    raise TokenExpiredError(expires_at)
                raise TokenAlreadyUsedError()

            counted = await self.session.execute(
                update(License)
                .where(
                    License.id == license_id,
                    License.is_active.is_(True),
                    License.download_count < License.max_downloads,
                )
                .values(download_count=License.download_count + 1, updated_at=now)
                .returning(License.download_count)
                .execution_options(synchronize_session=False)
            )
            download_count = counted.scalar_one_or_none()
            if download_count is None:
                raise EntitlementDeniedError(await self._download_denial(license_id))

            product = await self.session.get(Product, product_id)
            if product is None or not product.file_key:
                raise ContentUnavailableError("No file available for this product")

            locator = FileLocator(
                file_key=product.file_key,
                title=product.title,
                license_id=license_id,
                path=content_store.resolve(product.file_key) if content_store else None,
            )
        except FulfillmentError as exc:
            await self.session.rollback()
            metrics.record_download("redeem", exc.reason)
            logger.info("download_redeem_rejected", token_id=str(token_id), reason=exc.reason)
            raise

        await self.session.commit()

        metrics.record_download("redeem", "success")
        logger.info(
            "download_token_redeemed",
            token_id=str(token_id),
            license_id=str(license_id),
            download_count=download_count,
        )
        return locator

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _issue(
        self,
        buyer_id: UUID,
        license_row: License,
        product: Product,
        expiry_minutes: int | None,
    ) -> tuple[EntitlementSnapshot, DownloadCredential]:
        if DeliveryType(product.delivery_type) in LINK_DELIVERY_TYPES:
            raise DeliveryNotSupportedError(DeliveryType(product.delivery_type).value)
        if license_row.download_count >= license_row.max_downloads:
            metrics.record_download("issue", "download_exhausted")
            raise EntitlementDeniedError("download_exhausted")

        entitlement = await self.licenses.consume_license(license_row)

        max_minutes = settings.download_token_expires_minutes
        minutes = max(1, min(expiry_minutes or max_minutes, max_minutes))
        expires_at = _utc_now() + timedelta(minutes=minutes)

        raw_token = secrets.token_urlsafe(32)
        row = DownloadToken(
            token_hash=hash_token(raw_token),
            license_id=entitlement.license_id,
            product_id=product.id,
            buyer_id=buyer_id,
            expires_at=expires_at,
            used=False,
        )
        self.session.add(row)
        await self.session.flush()
        await self.session.commit()

        metrics.record_download("issue", "success")
        logger.info(
            "download_token_issued",
            token_id=str(row.id),
            license_id=str(entitlement.license_id),
            expires_at=expires_at.isoformat(),
        )
        credential = DownloadCredential(
            token=raw_token,
            license_id=entitlement.license_id,
            product_id=product.id,
            expires_at=expires_at,
        )
        return entitlement, credential

    async def _get_product(self, product_id: UUID) -> Product:
        product = await self.session.get(Product, product_id)
        if product is None:
            raise ResourceNotFoundError("product", product_id)
        return product

    async def _find_by_hash(self, token_hash: str) -> DownloadToken | None:
        result = await self.session.execute(
            select(DownloadToken).where(DownloadToken.token_hash == token_hash)
        )
        return result.scalar_one_or_none()

    async def _download_denial(self, license_id: UUID) -> str:
        license_row = await self.session.get(License, license_id)
        if license_row is not None and not license_row.is_active:
            return "inactive"
        return "download_exhausted"
