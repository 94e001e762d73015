"""
Notifications - transactional outbox and its dispatcher.

Services call enqueue_event() inside the transaction that performs the state
change, so an event exists if and only if the change committed. Dispatch
happens afterwards; a failed delivery is recorded on the row and retried on
the next run without touching the order or refund it describes.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

import httpx
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config import Settings, settings
from fulfillment.db.models import OutboxEvent
from fulfillment.db.session import get_write_session
from fulfillment.exceptions import NotificationDeliveryError
from fulfillment.observability.logging import get_logger
from fulfillment.observability.metrics import metrics

logger = get_logger(__name__)

# Events that fail this many times stop being picked up
MAX_DISPATCH_ATTEMPTS = 10

# A claimed row is invisible to other dispatchers until its lease runs out
CLAIM_LEASE_SECONDS = 300


class OutboxEventType(str, Enum):
    ORDER_PAID = "order.paid"
    ORDER_FAILED = "order.failed"
    REFUND_REQUESTED = "refund.requested"
    REFUND_PROCESSED = "refund.processed"
    REFUND_REJECTED = "refund.rejected"


@dataclass(frozen=True)
class NotificationEvent:
    """Outbox row as handed to a notifier."""

    event_id: UUID
    event_type: str
    order_id: UUID | None
    refund_id: UUID | None
    buyer_id: UUID | None
    amount_minor: int | None
    note: str | None
    created_at: datetime

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe body for webhook delivery."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "order_id": str(self.order_id) if self.order_id else None,
            "refund_id": str(self.refund_id) if self.refund_id else None,
            "buyer_id": str(self.buyer_id) if self.buyer_id else None,
            "amount_minor": self.amount_minor,
            "note": self.note,
            "created_at": self.created_at.isoformat(),
        }


class Notifier(Protocol):
    """Delivers one notification. Raises NotificationDeliveryError on failure."""

    async def send(self, event: NotificationEvent) -> None: ...


class LoggingNotifier:
    """Default notifier: writes the event to the structured log."""

    async def send(self, event: NotificationEvent) -> None:
        logger.info(
            "notification_sent",
            event_id=str(event.event_id),
            event_type=event.event_type,
            order_id=str(event.order_id) if event.order_id else None,
            refund_id=str(event.refund_id) if event.refund_id else None,
        )


class WebhookNotifier:
    """POSTs each event as JSON to a configured URL."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def send(self, event: NotificationEvent) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.post(
                    self.url,
                    json=event.to_payload(),
                    headers={"Idempotency-Key": str(event.event_id)},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationDeliveryError(event.event_type, str(exc)) from exc


def build_notifier(config: Settings | None = None) -> Notifier:
    """Webhook notifier when NOTIFICATION_WEBHOOK_URL is set, else log-only."""
    config = config or settings
    if config.notification_webhook_url:
        return WebhookNotifier(
            config.notification_webhook_url, config.notification_timeout_seconds
        )
    return LoggingNotifier()


def enqueue_event(
    session: AsyncSession,
    event_type: OutboxEventType,
    *,
    order_id: UUID | None = None,
    refund_id: UUID | None = None,
    buyer_id: UUID | None = None,
    amount_minor: int | None = None,
    note: str | None = None,
) -> OutboxEvent:
    """Add an outbox row to the caller's transaction. Does not flush or commit."""
    event = OutboxEvent(
        event_type=event_type.value,
        order_id=order_id,
        refund_id=refund_id,
        buyer_id=buyer_id,
        amount_minor=amount_minor,
        note=note,
        attempts=0,
    )
    session.add(event)
    return event


class OutboxDispatcher:
    """Delivers pending outbox rows through a notifier."""

    def __init__(self, session: AsyncSession, notifier: Notifier) -> None:
        self.session = session
        self.notifier = notifier

    async def dispatch_pending(self, limit: int | None = None) -> int:
        """
        Deliver up to `limit` undelivered events, oldest first.

        Rows are claimed in one short transaction (SKIP LOCKED, attempts
        bumped, lease set) that commits before any notifier call, so no row
        lock is held across network I/O. Outcomes are written afterwards in a
        second transaction. A dispatcher that dies mid-batch leaves rows whose
        lease expires and which the next run picks up again.

        Returns:
            Number of events delivered
        """
        events = await self._claim(limit or settings.outbox_batch_size)
        if not events:
            return 0

        delivered: list[UUID] = []
        failed: list[tuple[NotificationEvent, str]] = []
        for event in events:
            try:
                await self.notifier.send(event)
            except NotificationDeliveryError as exc:
                failed.append((event, exc.message))
                metrics.outbox_dispatched_total.labels(success="False").inc()
                logger.warning(
                    "outbox_dispatch_failed",
                    event_id=str(event.event_id),
                    event_type=event.event_type,
                    error=exc.message,
                )
                continue
            delivered.append(event.event_id)
            metrics.outbox_dispatched_total.labels(success="True").inc()

        await self._record_outcome(delivered, failed)
        logger.info("outbox_dispatched", delivered=len(delivered), batch=len(events))
        return len(delivered)

    async def _claim(self, limit: int) -> list[NotificationEvent]:
        now = datetime.now(UTC)
        pending = (
            select(OutboxEvent.id)
            .where(
                OutboxEvent.dispatched_at.is_(None),
                OutboxEvent.attempts < MAX_DISPATCH_ATTEMPTS,
                or_(OutboxEvent.claimed_until.is_(None), OutboxEvent.claimed_until < now),
            )
            .order_by(OutboxEvent.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        result = await self.session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(pending))
            .values(
                attempts=OutboxEvent.attempts + 1,
                claimed_until=now + timedelta(seconds=CLAIM_LEASE_SECONDS),
            )
            .returning(OutboxEvent)
            .execution_options(synchronize_session=False)
        )
        events = sorted(
            (event_from_row(row) for row in result.scalars().all()),
            key=lambda event: event.created_at,
        )
        await self.session.commit()
        return events

    async def _record_outcome(
        self, delivered: list[UUID], failed: list[tuple[NotificationEvent, str]]
    ) -> None:
        if delivered:
            await self.session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id.in_(delivered))
                .values(dispatched_at=datetime.now(UTC), last_error=None, claimed_until=None)
                .execution_options(synchronize_session=False)
            )
        for event, error in failed:
            await self.session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event.event_id)
                .values(last_error=error[:1000], claimed_until=None)
                .execution_options(synchronize_session=False)
            )
        await self.session.commit()


def event_from_row(row: OutboxEvent) -> NotificationEvent:
    return NotificationEvent(
        event_id=row.id,
        event_type=row.event_type,
        order_id=row.order_id,
        refund_id=row.refund_id,
        buyer_id=row.buyer_id,
        amount_minor=row.amount_minor,
        note=row.note,
        created_at=row.created_at,
    )


async def dispatch_outbox(notifier: Notifier | None = None) -> int:
    """Open a session and flush the outbox. Used by background tasks and scripts."""
    async with get_write_session() as session:
        dispatcher = OutboxDispatcher(session, notifier or build_notifier())
        return await dispatcher.dispatch_pending()
