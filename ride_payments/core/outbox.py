"""
Transactional outbox for notification events.

Ledger changes write ``payment_captured``, ``payment_refunded`` and
``cancellation_processed`` rows in the same transaction as the change itself;
``OutboxPublisher`` later hands them to the notification dispatcher.
"""
import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_payments.database.connection import get_session_factory
from ride_payments.database.models import OutboxEvent, utcnow
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

NotificationDispatcher = Callable[[Dict[str, Any]], Awaitable[Any]]

PAYMENT_CAPTURED = "payment_captured"
PAYMENT_REFUNDED = "payment_refunded"
CANCELLATION_PROCESSED = "cancellation_processed"


def write_outbox_event(
    db: AsyncSession,
    aggregate_id: uuid.UUID,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """
    Stage an outbox event in the caller's transaction.

    Args:
        db: Database session the domain change is being written with
        aggregate_id: Aggregate ID (e.g. payment intent ID)
        aggregate_type: Aggregate type (e.g. 'payment_intent')
        event_type: One of the notification event names
        payload: JSON-serializable event payload
    """
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
        published=False,
    )
    db.add(event)
    return event


class OutboxPublisher:
    """
    Publishes events from the outbox table to the notification dispatcher.

    Delivery is at-least-once:
    1. Read unpublished events oldest-first
    2. Hand each to the dispatcher
    3. Mark the delivered ones as published
    """

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.dispatcher = dispatcher or self._default_dispatcher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._session_factory = session_factory
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def _default_dispatcher(self, event_data: Dict[str, Any]) -> None:
        """Log-only dispatcher used when no notification service is wired in."""
        logger.info(
            "notification_dispatched_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published == False)  # noqa: E712
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if the dispatcher accepted it
        """
        try:
            await self.dispatcher(
                {
                    "id": event.id,
                    "aggregate_id": str(event.aggregate_id),
                    "aggregate_type": event.aggregate_type,
                    "event_type": event.event_type,
                    "payload": event.payload,
                    "created_at": event.created_at.isoformat(),
                }
            )
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return True

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)
        await db.commit()

        logger.info("outbox_events_marked_published", count=len(event_ids))

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self.session_factory() as db:
            events = await self._fetch_unpublished_events(db)
            if not events:
                return 0

            published_ids = []
            for event in events:
                if await self._publish_event(event):
                    published_ids.append(event.id)

            await self._mark_as_published(db, published_ids)

            logger.info(
                "outbox_batch_processed",
                total=len(events),
                published=len(published_ids),
                failed=len(events) - len(published_ids),
            )
            return len(published_ids)

    async def start(self) -> None:
        """Poll and publish until ``stop()`` is called."""
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0

                # Drain immediately while there is backlog
                await asyncio.sleep(self.poll_interval_seconds if published_count == 0 else 0.1)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Count unpublished events."""
        async with self.session_factory() as db:
            stmt = select(func.count(OutboxEvent.id)).where(
                OutboxEvent.published == False  # noqa: E712
            )
            return int((await db.execute(stmt)).scalar_one())
