"""
Tests for LicenseService.
"""

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy import Update
from sqlalchemy.dialects import postgresql

from conftest import create_license, create_order, create_product, make_result
from fulfillment.exceptions import EntitlementDeniedError, NotOwnerError, ResourceNotFoundError
from fulfillment.models.api import DeliveryType, LicenseTier
from fulfillment.services.licenses import LicenseService, generate_license_key


class TestIssue:
    async def test_issue_uses_tier_policy(self, db_session: AsyncMock) -> None:
        product = create_product(license_tier=LicenseTier.EXTENDED)
        order = create_order([product])

        license_row = await LicenseService(db_session).issue(
            order, order.items[0], LicenseTier.EXTENDED
        )

        assert license_row.buyer_id == order.buyer_id
        assert license_row.order_item_id == order.items[0].id
        assert license_row.max_access == 100
        assert license_row.max_downloads == 100
        assert license_row.access_count == 0
        assert license_row.is_active is True
        assert license_row.license_key.startswith("FLW-")
        db_session.commit.assert_not_awaited()

    def test_license_key_format(self) -> None:
        key = generate_license_key()

        assert key.startswith("FLW-")
        assert key == key.upper()
        assert len(key) == len("FLW-") + 36


class TestConsumeAccess:
    async def test_file_product_requires_credential(self, db_session: AsyncMock) -> None:
        product = create_product()
        buyer_id = uuid4()
        license_row = create_license(buyer_id, product, access_count=3)
        db_session.execute = AsyncMock(
            side_effect=[make_result(one=license_row), make_result(one=4)]
        )
        db_session.get = AsyncMock(return_value=product)

        snapshot = await LicenseService(db_session).consume_access(buyer_id, product.id)

        assert snapshot.access_count == 4
        assert snapshot.requires_credential is True
        assert snapshot.delivery_url is None
        assert snapshot.delivery_type == DeliveryType.FILE_DOWNLOAD

    async def test_link_product_returns_url(self, db_session: AsyncMock) -> None:
        product = create_product(
            delivery_type=DeliveryType.CLONE_LINK,
            delivery_url="https://notion.so/template",
            file_key=None,
        )
        buyer_id = uuid4()
        license_row = create_license(buyer_id, product)
        db_session.execute = AsyncMock(
            side_effect=[make_result(one=license_row), make_result(one=1)]
        )
        db_session.get = AsyncMock(return_value=product)

        snapshot = await LicenseService(db_session).consume_access(buyer_id, product.id)

        assert snapshot.requires_credential is False
        assert snapshot.delivery_url == "https://notion.so/template"

    async def test_no_license(self, db_session: AsyncMock) -> None:
        with pytest.raises(EntitlementDeniedError) as exc_info:
            await LicenseService(db_session).consume_access(uuid4(), uuid4())

        assert exc_info.value.denial == "no_license"
        assert exc_info.value.http_status == 403

    @pytest.mark.parametrize("is_active", [True, False])
    async def test_exhausted_reported_before_inactive(
        self, db_session: AsyncMock, is_active: bool
    ) -> None:
        """10/10 accesses: access_exhausted whether or not the license is still active."""
        product = create_product()
        buyer_id = uuid4()
        license_row = create_license(buyer_id, product, access_count=10, is_active=is_active)
        db_session.execute = AsyncMock(return_value=make_result(one=license_row))

        with pytest.raises(EntitlementDeniedError) as exc_info:
            await LicenseService(db_session).consume_access(buyer_id, product.id)

        assert exc_info.value.denial == "access_exhausted"
        assert db_session.execute.await_count == 1

    async def test_inactive_license(self, db_session: AsyncMock) -> None:
        product = create_product()
        buyer_id = uuid4()
        license_row = create_license(buyer_id, product, access_count=3, is_active=False)
        db_session.execute = AsyncMock(return_value=make_result(one=license_row))

        with pytest.raises(EntitlementDeniedError) as exc_info:
            await LicenseService(db_session).consume_access(buyer_id, product.id)

        assert exc_info.value.denial == "inactive"

    async def test_increment_is_guarded(self, db_session: AsyncMock) -> None:
        product = create_product()
        buyer_id = uuid4()
        license_row = create_license(buyer_id, product)
        db_session.execute = AsyncMock(
            side_effect=[make_result(one=license_row), make_result(one=1)]
        )
        db_session.get = AsyncMock(return_value=product)

        await LicenseService(db_session).consume_access(buyer_id, product.id)

        stmt = db_session.execute.call_args_list[1].args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "licenses.is_active IS true" in sql
        assert "licenses.access_count < licenses.max_access" in sql

    async def test_concurrent_access_never_exceeds_cap(self, db_session: AsyncMock) -> None:
        """12 concurrent consumes against 9/10 -> one succeeds."""
        product = create_product()
        buyer_id = uuid4()
        license_row = create_license(buyer_id, product, access_count=9)
        state = {"count": 9}

        async def execute(stmt, *args, **kwargs):
            await asyncio.sleep(0)
            if not isinstance(stmt, Update):
                return make_result(one=license_row)
            if state["count"] < license_row.max_access:
                state["count"] += 1
                return make_result(one=state["count"])
            return make_result(one=None)

        db_session.execute = AsyncMock(side_effect=execute)
        db_session.get = AsyncMock(return_value=product)
        service = LicenseService(db_session)

        results = await asyncio.gather(
            *(service.consume_access(buyer_id, product.id) for _ in range(12)),
            return_exceptions=True,
        )

        granted = [r for r in results if not isinstance(r, Exception)]
        denied = [r for r in results if isinstance(r, EntitlementDeniedError)]
        assert len(granted) == 1
        assert len(denied) == 11
        assert state["count"] == 10


class TestQueries:
    async def test_revoke_returns_revoked_ids(self, db_session: AsyncMock) -> None:
        ids = [uuid4(), uuid4()]
        db_session.execute = AsyncMock(return_value=make_result(many=ids))

        revoked = await LicenseService(db_session).revoke(uuid4())

        assert revoked == ids
        db_session.commit.assert_not_awaited()

    async def test_has_active_license(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(count=True))

        assert await LicenseService(db_session).has_active_license(uuid4(), uuid4()) is True

    async def test_owned_product_ids_skips_query_when_empty(self, db_session: AsyncMock) -> None:
        owned = await LicenseService(db_session).owned_product_ids(uuid4(), [])

        assert owned == set()
        db_session.execute.assert_not_awaited()

    async def test_get_license_not_owner(self, db_session: AsyncMock) -> None:
        license_row = create_license(uuid4(), create_product())
        db_session.get = AsyncMock(return_value=license_row)

        with pytest.raises(NotOwnerError):
            await LicenseService(db_session).get_license(uuid4(), license_row.id)

    async def test_get_license_missing(self, db_session: AsyncMock) -> None:
        with pytest.raises(ResourceNotFoundError):
            await LicenseService(db_session).get_license(uuid4(), uuid4())

    async def test_list_licenses(self, db_session: AsyncMock) -> None:
        buyer_id = uuid4()
        rows = [create_license(buyer_id, create_product()) for _ in range(2)]
        db_session.execute = AsyncMock(return_value=make_result(many=rows))

        licenses = await LicenseService(db_session).list_licenses(buyer_id)

        assert [lic.license_id for lic in licenses] == [r.id for r in rows]
        assert all(lic.tier == LicenseTier.PERSONAL for lic in licenses)
