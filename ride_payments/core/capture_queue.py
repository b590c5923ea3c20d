"""
Durable capture work queue.

A ride-completed event turns each booking's authorized intent into one
CaptureQueueItem. Workers claim items with a compare-and-swap from pending
to processing; that UPDATE is the only thing standing between two
overlapping worker ticks and a double capture.
"""
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Type

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ride_payments.config import get_settings
from ride_payments.core.errors import (
    ConsistencyConflict,
    IntentNotFound,
    PaymentError,
    PolicyViolation,
)
from ride_payments.database.connection import get_session_factory
from ride_payments.database.models import (
    CaptureItemStatus,
    CaptureQueueItem,
    PaymentIntent,
    PaymentStatus,
    utcnow,
)
from ride_payments.monitoring.metrics import metrics

if TYPE_CHECKING:
    from ride_payments.core.ledger import PaymentLedger

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = (CaptureItemStatus.PENDING, CaptureItemStatus.PROCESSING)


async def find_active_item(
    db: AsyncSession, payment_intent_id: uuid.UUID
) -> Optional[CaptureQueueItem]:
    """The pending or processing item for an intent, if any."""
    result = await db.execute(
        select(CaptureQueueItem).where(
            CaptureQueueItem.payment_intent_id == payment_intent_id,
            CaptureQueueItem.status.in_(ACTIVE_STATUSES),
        )
    )
    return result.scalar_one_or_none()


class CaptureQueue:
    """Store of capture work items with claim/lease semantics."""

    def __init__(
        self,
        ledger: "PaymentLedger",
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.ledger = ledger
        self._session_factory = session_factory
        self.max_attempts = max_attempts or get_settings().capture_max_attempts

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def enqueue(
        self, payment_intent_id: uuid.UUID, amount_cents: Optional[int] = None
    ) -> CaptureQueueItem:
        """
        Queue an authorized intent for capture.

        Moves the intent Authorized → CaptureQueued and inserts the item in
        one transaction.

        Raises:
            PolicyViolation: If the intent is not Authorized or already queued
            ConsistencyConflict: If another writer changed the intent meanwhile
        """
        return await self._insert_item(payment_intent_id, amount_cents, busy_error=PolicyViolation)

    async def enqueue_claimed(
        self, payment_intent_id: uuid.UUID, amount_cents: int, owner: str
    ) -> CaptureQueueItem:
        """
        Queue an authorized intent and hand the item straight to ``owner``.

        Used for captures that must land inside a request, such as a
        cancellation fee. The item starts out processing under ``owner``'s
        lease, so the intent is never CaptureQueued without an item and a
        caller that dies mid-capture is recovered by lease expiry like any
        worker. ``owner`` is also stored as the item's source.

        Raises:
            ConsistencyConflict: A capture is already queued or in flight, or
                the intent changed meanwhile
            PolicyViolation: If the intent is not Authorized
        """
        return await self._insert_item(
            payment_intent_id, amount_cents, busy_error=ConsistencyConflict, owner=owner
        )

    async def requeue_failed(
        self, payment_intent_id: uuid.UUID, requested_by: str
    ) -> CaptureQueueItem:
        """
        Operator remediation for a capture that was dead-lettered.

        An Authorized intent is queued through the usual edge. A CaptureQueued
        intent left without an active item gets a fresh pending item and keeps
        its status. The amount and source come from the intent's most recent
        item, so a dead-lettered cancellation fee is retried as that fee.
        Failed and already-captured intents are never touched.

        Raises:
            IntentNotFound: If the intent does not exist
            PolicyViolation: If a capture is still active or the status does
                not allow another attempt
        """
        async with self.session_factory() as db:
            intent = await db.get(PaymentIntent, payment_intent_id)
            if intent is None:
                raise IntentNotFound(f"Payment intent {payment_intent_id} not found")
            if await find_active_item(db, intent.id) is not None:
                raise PolicyViolation(f"Payment intent {intent.id} already has an active capture")
            if intent.status not in (PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURE_QUEUED):
                raise PolicyViolation(
                    f"Only authorized or stuck queued payments can be requeued "
                    f"(status={intent.status.value})"
                )

            result = await db.execute(
                select(CaptureQueueItem)
                .where(CaptureQueueItem.payment_intent_id == intent.id)
                .order_by(CaptureQueueItem.created_at.desc())
                .limit(1)
            )
            latest = result.scalar_one_or_none()
            amount = latest.amount_cents if latest is not None else intent.amount_total
            source = latest.source if latest is not None else None

            if intent.status is PaymentStatus.AUTHORIZED:
                self.ledger.transition(
                    db, intent, PaymentStatus.CAPTURE_QUEUED, "payment.capture_queued",
                    amount_cents=amount, source=source, requested_by=requested_by,
                )
            item = CaptureQueueItem(
                id=uuid.uuid4(),
                payment_intent_id=intent.id,
                amount_cents=amount,
                attempts=0,
                max_attempts=self.max_attempts,
                status=CaptureItemStatus.PENDING,
                next_attempt_at=utcnow(),
                source=source,
            )
            db.add(item)

            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise PolicyViolation(
                    f"Payment intent {payment_intent_id} already has an active capture"
                ) from e
            except StaleDataError as e:
                await db.rollback()
                raise ConsistencyConflict(
                    f"Payment intent {payment_intent_id} changed while requeuing"
                ) from e

        logger.warning(
            "capture_item_requeued_by_operator",
            queue_item_id=str(item.id),
            payment_intent_id=str(payment_intent_id),
            previous_item_id=str(latest.id) if latest is not None else None,
            amount_cents=amount,
            requested_by=requested_by,
        )
        return item

    async def _insert_item(
        self,
        payment_intent_id: uuid.UUID,
        amount_cents: Optional[int],
        busy_error: Type[PaymentError],
        owner: Optional[str] = None,
    ) -> CaptureQueueItem:
        async with self.session_factory() as db:
            intent = await db.get(PaymentIntent, payment_intent_id)
            if intent is None:
                raise IntentNotFound(f"Payment intent {payment_intent_id} not found")

            if (
                intent.status is PaymentStatus.CAPTURE_QUEUED
                or await find_active_item(db, intent.id) is not None
            ):
                raise busy_error(f"Payment intent {intent.id} is already queued for capture")
            if intent.status is not PaymentStatus.AUTHORIZED:
                raise PolicyViolation(
                    f"Only authorized payments can be queued (status={intent.status.value})"
                )

            amount = intent.amount_total if amount_cents is None else amount_cents
            if amount <= 0 or amount > intent.amount_total:
                raise PolicyViolation("Capture amount must be within the authorized total")

            self.ledger.transition(
                db, intent, PaymentStatus.CAPTURE_QUEUED, "payment.capture_queued",
                amount_cents=amount, source=owner,
            )
            now = utcnow()
            item = CaptureQueueItem(
                id=uuid.uuid4(),
                payment_intent_id=intent.id,
                amount_cents=amount,
                attempts=0,
                max_attempts=self.max_attempts,
                status=CaptureItemStatus.PENDING,
                next_attempt_at=now,
                source=owner,
            )
            if owner is not None:
                item.status = CaptureItemStatus.PROCESSING
                item.locked_at = now
                item.locked_by = owner
                item.last_attempt_at = now
            db.add(item)

            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise busy_error(
                    f"Payment intent {payment_intent_id} is already queued for capture"
                ) from e
            except StaleDataError as e:
                await db.rollback()
                raise ConsistencyConflict(
                    f"Payment intent {payment_intent_id} changed while enqueuing"
                ) from e

        logger.info(
            "capture_item_enqueued",
            queue_item_id=str(item.id),
            payment_intent_id=str(payment_intent_id),
            amount_cents=amount,
            owner=owner,
        )
        return item

    async def enqueue_for_ride(
        self, ride_id: uuid.UUID, booking_ids: Iterable[uuid.UUID]
    ) -> List[CaptureQueueItem]:
        """
        Handle a ride-completed event: queue each booking's authorized intent.

        Bookings without an authorized intent, or already queued, are skipped.
        """
        booking_ids = list(booking_ids)
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentIntent.id, PaymentIntent.booking_id).where(
                    PaymentIntent.ride_id == ride_id,
                    PaymentIntent.booking_id.in_(booking_ids),
                    PaymentIntent.status == PaymentStatus.AUTHORIZED,
                )
            )
            candidates = list(result.all())

        found = {row.booking_id for row in candidates}
        for booking_id in booking_ids:
            if booking_id not in found:
                logger.info(
                    "ride_completed_booking_skipped",
                    ride_id=str(ride_id),
                    booking_id=str(booking_id),
                    reason="no_authorized_intent",
                )

        items = []
        for row in candidates:
            try:
                items.append(await self.enqueue(row.id))
            except (PolicyViolation, ConsistencyConflict) as e:
                logger.info(
                    "ride_completed_booking_skipped",
                    ride_id=str(ride_id),
                    booking_id=str(row.booking_id),
                    reason=str(e),
                )

        logger.info(
            "ride_completed_processed",
            ride_id=str(ride_id),
            bookings=len(booking_ids),
            enqueued=len(items),
        )
        return items

    async def fetch_due(
        self, limit: int, now: Optional[datetime] = None
    ) -> List[CaptureQueueItem]:
        """Pending items whose backoff has elapsed, oldest first."""
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(CaptureQueueItem)
                .where(
                    CaptureQueueItem.status == CaptureItemStatus.PENDING,
                    CaptureQueueItem.next_attempt_at <= now,
                    CaptureQueueItem.attempts < CaptureQueueItem.max_attempts,
                )
                .order_by(CaptureQueueItem.created_at, CaptureQueueItem.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def claim(
        self, item_id: uuid.UUID, worker_id: str, now: Optional[datetime] = None
    ) -> bool:
        """
        Atomically take ownership of a pending item that is due.

        The UPDATE re-checks the same conditions as ``fetch_due``, so a caller
        holding a stale snapshot cannot take an item that was released for a
        later retry or has used up its attempts. Callers must re-read the item
        after a successful claim rather than trust the snapshot's counters.

        Returns:
            bool: True only for the single caller whose UPDATE matched
        """
        due_by = now or utcnow()
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(CaptureQueueItem)
                .where(
                    CaptureQueueItem.id == item_id,
                    CaptureQueueItem.status == CaptureItemStatus.PENDING,
                    CaptureQueueItem.next_attempt_at <= due_by,
                    CaptureQueueItem.attempts < CaptureQueueItem.max_attempts,
                )
                .values(
                    status=CaptureItemStatus.PROCESSING,
                    locked_at=now,
                    locked_by=worker_id,
                    last_attempt_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        claimed = result.rowcount == 1
        logger.info(
            "capture_item_claimed" if claimed else "capture_item_claim_lost",
            queue_item_id=str(item_id),
            worker_id=worker_id,
        )
        return claimed

    async def reclaim_expired(self, item_id: uuid.UUID, cutoff: datetime, worker_id: str) -> bool:
        """Take over a processing item whose lease is older than ``cutoff``."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(CaptureQueueItem)
                .where(
                    CaptureQueueItem.id == item_id,
                    CaptureQueueItem.status == CaptureItemStatus.PROCESSING,
                    CaptureQueueItem.locked_at < cutoff,
                )
                .values(locked_at=utcnow(), locked_by=worker_id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    async def _finish(self, item_id: uuid.UUID, **values) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(CaptureQueueItem)
                .where(
                    CaptureQueueItem.id == item_id,
                    CaptureQueueItem.status == CaptureItemStatus.PROCESSING,
                )
                .values(locked_at=None, locked_by=None, **values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    async def complete(self, item_id: uuid.UUID) -> bool:
        done = await self._finish(
            item_id,
            status=CaptureItemStatus.COMPLETED,
            attempts=CaptureQueueItem.attempts + 1,
            error_message=None,
        )
        logger.info("capture_item_completed", queue_item_id=str(item_id))
        return done

    async def release_for_retry(
        self, item_id: uuid.UUID, error: str, delay_seconds: float
    ) -> bool:
        """Consume one attempt and put the item back to pending after ``delay_seconds``."""
        next_attempt_at = utcnow() + timedelta(seconds=delay_seconds)
        released = await self._finish(
            item_id,
            status=CaptureItemStatus.PENDING,
            attempts=CaptureQueueItem.attempts + 1,
            error_message=error,
            next_attempt_at=next_attempt_at,
        )
        logger.info(
            "capture_item_released_for_retry",
            queue_item_id=str(item_id),
            next_attempt_at=next_attempt_at.isoformat(),
            error=error,
        )
        return released

    async def fail(self, item_id: uuid.UUID, error: str, consume_attempt: bool = True) -> bool:
        """Mark an item terminally Failed; it stays visible for manual remediation."""
        values = {"status": CaptureItemStatus.FAILED, "error_message": error}
        if consume_attempt:
            values["attempts"] = CaptureQueueItem.attempts + 1
        failed = await self._finish(item_id, **values)
        logger.error("capture_item_failed", queue_item_id=str(item_id), error=error)
        return failed

    async def get(self, item_id: uuid.UUID) -> Optional[CaptureQueueItem]:
        async with self.session_factory() as db:
            return await db.get(CaptureQueueItem, item_id)

    async def active_item_for(self, payment_intent_id: uuid.UUID) -> Optional[CaptureQueueItem]:
        async with self.session_factory() as db:
            return await find_active_item(db, payment_intent_id)

    async def items_for(self, payment_intent_id: uuid.UUID) -> List[CaptureQueueItem]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(CaptureQueueItem)
                .where(CaptureQueueItem.payment_intent_id == payment_intent_id)
                .order_by(CaptureQueueItem.created_at)
            )
            return list(result.scalars().all())

    async def list_failed(self, limit: int = 100) -> List[CaptureQueueItem]:
        """Dead-lettered items for operator review, most recent first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(CaptureQueueItem)
                .where(CaptureQueueItem.status == CaptureItemStatus.FAILED)
                .order_by(CaptureQueueItem.updated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_expired_leases(self, cutoff: datetime) -> List[CaptureQueueItem]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(CaptureQueueItem).where(
                    CaptureQueueItem.status == CaptureItemStatus.PROCESSING,
                    CaptureQueueItem.locked_at < cutoff,
                )
            )
            return list(result.scalars().all())

    async def depth(self) -> Dict[str, int]:
        """Item counts by status; also published as a gauge."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(CaptureQueueItem.status, func.count(CaptureQueueItem.id)).group_by(
                    CaptureQueueItem.status
                )
            )
            counts = {status.value: 0 for status in CaptureItemStatus}
            for status, count in result.all():
                counts[CaptureItemStatus(status).value] = count

        metrics.set_capture_queue_depth(counts)
        return counts
