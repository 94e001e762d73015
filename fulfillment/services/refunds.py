"""
Refund Service - buyer refund requests and admin approval/rejection.

NO DICTIONARIES - All operations use strongly typed domain models.

Approval calls the gateway first, with no write transaction open and an
idempotency key of refund-<id>, then finalizes refund, order, licenses and
outbox in a single transaction. A gateway failure leaves the refund
requested so the admin can retry.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from fulfillment.config import settings
from fulfillment.db.models import Order, Refund
from fulfillment.exceptions import (
    DataIntegrityError,
    DuplicateRefundError,
    InvalidStateTransitionError,
    NotOwnerError,
    RefundWindowExpiredError,
    ResourceNotFoundError,
)
from fulfillment.models.api import OrderStatus, PaymentMethod, RefundStatus
from fulfillment.models.domain import Principal, RefundData
from fulfillment.models.lifecycle import ensure_order_transition, ensure_refund_transition
from fulfillment.observability.logging import get_logger
from fulfillment.observability.metrics import metrics
from fulfillment.observability.tracing import trace_operation
from fulfillment.services.licenses import LicenseService
from fulfillment.services.notifications import OutboxEventType, enqueue_event
from fulfillment.services.payment_provider import PaymentProvider

logger = get_logger(__name__)

DEFAULT_REJECTION_NOTE = "Refund request denied"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RefundService:
    """Refund workflow."""

    def __init__(self, session: AsyncSession, provider: PaymentProvider | None = None) -> None:
        self.session = session
        self.provider = provider
        self.licenses = LicenseService(session)

    async def request(
        self, buyer_id: UUID, order_id: UUID, reason: str, now: datetime | None = None
    ) -> RefundData:
        """
        Open a refund request for a paid order.

        Raises:
            ResourceNotFoundError: order doesn't exist
            NotOwnerError: order belongs to another buyer
            InvalidStateTransitionError: order is not paid
            DuplicateRefundError: a refund already exists for the order
            RefundWindowExpiredError: paid more than REFUND_WINDOW_DAYS ago
        """
        now = now or _utc_now()

        order = await self.session.get(Order, order_id)
        if order is None:
            raise ResourceNotFoundError("order", order_id)
        if order.buyer_id != buyer_id:
            raise NotOwnerError("order", buyer_id)
        ensure_order_transition(OrderStatus(order.status), OrderStatus.REFUNDED)

        if await self._find_by_order(order_id) is not None:
            raise DuplicateRefundError(order_id)

        window = timedelta(days=settings.refund_window_days)
        if order.paid_at is None or now - order.paid_at > window:
            raise RefundWindowExpiredError(order.paid_at or now, settings.refund_window_days)

        refund = Refund(
            id=uuid4(),
            order_id=order_id,
            buyer_id=buyer_id,
            reason=reason,
            status=RefundStatus.REQUESTED,
            amount_minor=order.total_minor,
            created_at=now,
        )
        self.session.add(refund)
        enqueue_event(
            self.session,
            OutboxEventType.REFUND_REQUESTED,
            order_id=order_id,
            refund_id=refund.id,
            buyer_id=buyer_id,
            amount_minor=refund.amount_minor,
        )
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise DuplicateRefundError(order_id) from exc
        await self.session.commit()

        metrics.refunds_total.labels(status=RefundStatus.REQUESTED.value).inc()
        logger.info(
            "refund_requested",
            refund_id=str(refund.id),
            order_id=str(order_id),
            amount_minor=refund.amount_minor,
        )
        return refund_to_domain(refund)

    async def approve(self, admin_id: UUID, refund_id: UUID) -> RefundData:
        """
        Reverse the payment, mark the order refunded and revoke its licenses.

        Raises:
            ResourceNotFoundError: refund or order doesn't exist
            InvalidStateTransitionError: refund is not in requested
            PaymentProviderError: gateway refund failed; nothing changed
            DataIntegrityError: gateway refunded but finalizing failed
        """
        with trace_operation("approve_refund", refund_id=refund_id, admin_id=admin_id):
            refund = await self._get_refund_row(refund_id)
            ensure_refund_transition(RefundStatus(refund.status), RefundStatus.PROCESSED)

            order = await self.session.get(Order, refund.order_id)
            if order is None:
                raise ResourceNotFoundError("order", refund.order_id)
            ensure_order_transition(OrderStatus(order.status), OrderStatus.REFUNDED)

            # Close the read transaction before talking to the gateway
            await self.session.commit()

            refund_ref = await self._refund_at_gateway(refund, order)

            # rollback() expires order and refund; the failure path reads only these
            order_id, buyer_id, amount_minor = order.id, refund.buyer_id, refund.amount_minor

            now = _utc_now()
            step = "mark_refund_processed"
            try:
                won = await self.session.execute(
                    update(Refund)
                    .where(Refund.id == refund_id, Refund.status == RefundStatus.REQUESTED)
                    .values(
                        status=RefundStatus.PROCESSED,
                        refund_ref=refund_ref,
                        processed_by=admin_id,
                        processed_at=now,
                        updated_at=now,
                    )
                    .returning(Refund.id)
                    .execution_options(synchronize_session=False)
                )
                if won.scalar_one_or_none() is None:
                    await self.session.rollback()
                    current = await self._get_refund_row(refund_id, refresh=True)
                    raise InvalidStateTransitionError(
                        "refund",
                        RefundStatus(current.status).value,
                        RefundStatus.PROCESSED.value,
                    )

                step = "mark_order_refunded"
                moved = await self.session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status == OrderStatus.PAID)
                    .values(status=OrderStatus.REFUNDED, updated_at=now)
                    .returning(Order.id)
                    .execution_options(synchronize_session=False)
                )
                if moved.scalar_one_or_none() is None:
                    raise DataIntegrityError(f"Order {order_id} left paid before refund finalized")

                step = "revoke_licenses"
                revoked = await self.licenses.revoke(order_id)

                step = "enqueue_event"
                enqueue_event(
                    self.session,
                    OutboxEventType.REFUND_PROCESSED,
                    order_id=order_id,
                    refund_id=refund_id,
                    buyer_id=buyer_id,
                    amount_minor=amount_minor,
                )
                await self.session.commit()
            except (DataIntegrityError, SQLAlchemyError) as exc:
                await self.session.rollback()
                logger.error(
                    "refund_finalize_failed",
                    refund_id=str(refund_id),
                    order_id=str(order_id),
                    step=step,
                    refund_ref=refund_ref,
                    error=str(exc),
                )
                metrics.record_error(type(exc).__name__, "approve_refund")
                if isinstance(exc, DataIntegrityError):
                    raise
                raise DataIntegrityError(f"refund {refund_id} failed at {step}: {exc}") from exc

        metrics.refunds_total.labels(status=RefundStatus.PROCESSED.value).inc()
        logger.info(
            "refund_approved",
            refund_id=str(refund_id),
            order_id=str(order_id),
            admin_id=str(admin_id),
            refund_ref=refund_ref,
            licenses_revoked=len(revoked),
        )
        _apply_committed(
            refund,
            status=RefundStatus.PROCESSED,
            refund_ref=refund_ref,
            processed_by=admin_id,
            processed_at=now,
        )
        return refund_to_domain(refund)

    async def reject(self, admin_id: UUID, refund_id: UUID, admin_note: str | None = None) -> RefundData:
        """
        Close a refund request without moving money or touching licenses.

        Raises:
            ResourceNotFoundError: refund doesn't exist
            InvalidStateTransitionError: refund is not in requested
        """
        refund = await self._get_refund_row(refund_id)
        ensure_refund_transition(RefundStatus(refund.status), RefundStatus.REJECTED)

        note = admin_note or DEFAULT_REJECTION_NOTE
        now = _utc_now()
        won = await self.session.execute(
            update(Refund)
            .where(Refund.id == refund_id, Refund.status == RefundStatus.REQUESTED)
            .values(
                status=RefundStatus.REJECTED,
                admin_note=note,
                processed_by=admin_id,
                processed_at=now,
                updated_at=now,
            )
            .returning(Refund.id)
            .execution_options(synchronize_session=False)
        )
        if won.scalar_one_or_none() is None:
            await self.session.rollback()
            current = await self._get_refund_row(refund_id, refresh=True)
            raise InvalidStateTransitionError(
                "refund", RefundStatus(current.status).value, RefundStatus.REJECTED.value
            )

        enqueue_event(
            self.session,
            OutboxEventType.REFUND_REJECTED,
            order_id=refund.order_id,
            refund_id=refund_id,
            buyer_id=refund.buyer_id,
            note=note,
        )
        await self.session.commit()

        metrics.refunds_total.labels(status=RefundStatus.REJECTED.value).inc()
        logger.info("refund_rejected", refund_id=str(refund_id), admin_id=str(admin_id))
        _apply_committed(
            refund,
            status=RefundStatus.REJECTED,
            admin_note=note,
            processed_by=admin_id,
            processed_at=now,
        )
        return refund_to_domain(refund)

    async def list_refunds(
        self, status: RefundStatus | None = None, page: int = 1, limit: int = 20
    ) -> tuple[list[RefundData], int]:
        """Admin listing, newest first, with the total count for pagination."""
        query = select(Refund)
        count_query = select(func.count()).select_from(Refund)
        if status is not None:
            query = query.where(Refund.status == status)
            count_query = count_query.where(Refund.status == status)

        total = (await self.session.execute(count_query)).scalar_one()
        result = await self.session.execute(
            query.order_by(Refund.created_at.desc()).offset((page - 1) * limit).limit(limit)
        )
        return [refund_to_domain(r) for r in result.scalars().all()], int(total)

    async def get_refund_for_order(self, principal: Principal, order_id: UUID) -> RefundData:
        """
        Raises:
            ResourceNotFoundError: order or refund doesn't exist
            NotOwnerError: order belongs to another buyer
        """
        order = await self.session.get(Order, order_id)
        if order is None:
            raise ResourceNotFoundError("order", order_id)
        if order.buyer_id != principal.user_id and not principal.is_admin:
            raise NotOwnerError("order", principal.user_id)

        refund = await self._find_by_order(order_id)
        if refund is None:
            raise ResourceNotFoundError("refund", order_id)
        return refund_to_domain(refund)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _refund_at_gateway(self, refund: Refund, order: Order) -> str | None:
        """Reverse the charge. Skipped for free orders and zero amounts."""
        if not order.charge_ref or refund.amount_minor == 0:
            logger.info("gateway_refund_skipped", refund_id=str(refund.id), order_id=str(order.id))
            return None
        if order.payment_method == PaymentMethod.FREE:
            return None
        if self.provider is None:
            raise DataIntegrityError("Refund approval requires a payment provider")

        return await self.provider.refund(
            order.charge_ref, refund.amount_minor, idempotency_key=f"refund-{refund.id}"
        )

    async def _get_refund_row(self, refund_id: UUID, refresh: bool = False) -> Refund:
        refund = await self.session.get(Refund, refund_id, populate_existing=refresh)
        if refund is None:
            raise ResourceNotFoundError("refund", refund_id)
        return refund

    async def _find_by_order(self, order_id: UUID) -> Refund | None:
        result = await self.session.execute(select(Refund).where(Refund.order_id == order_id))
        return result.scalar_one_or_none()


def _apply_committed(refund: Refund, **values: object) -> None:
    """Mirror a committed UPDATE onto the loaded instance without dirtying it."""
    for key, value in values.items():
        set_committed_value(refund, key, value)


def refund_to_domain(refund: Refund) -> RefundData:
    return RefundData(
        refund_id=refund.id,
        order_id=refund.order_id,
        buyer_id=refund.buyer_id,
        reason=refund.reason,
        status=RefundStatus(refund.status),
        amount_minor=refund.amount_minor,
        refund_ref=refund.refund_ref,
        admin_note=refund.admin_note,
        processed_by=refund.processed_by,
        processed_at=refund.processed_at,
        created_at=refund.created_at,
    )
