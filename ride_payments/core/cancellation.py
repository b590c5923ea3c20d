"""
Cancellation orchestration.

Applies a CancellationDecision to a booking's payment intent, bypassing the
ride-completed capture path:

- Authorized, 100% refund: void the hold.
- Authorized, 50% or 0% refund: capture the fee now and release the rest.
- Captured, 100% or 50%: refund that share of what was captured.
- Captured, 0%: nothing moves.

A booking is cancelled at most once. Its ``ride_cancellations`` row is
claimed before any money moves and completed with the refund and fee amounts
plus a ``cancellation_processed`` notification; repeating the request
returns the stored outcome. A request that fails midway leaves the row
claimable, and the retry carries on from what the ledger shows already
happened, recognising its own fee capture or refund by the row id.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_payments.core.capture_queue import ACTIVE_STATUSES, CaptureQueue
from ride_payments.core.errors import ConsistencyConflict, IntentNotFound, PaymentValidationError
from ride_payments.core.ledger import CAPTURED_STATUSES, PaymentLedger
from ride_payments.core.outbox import CANCELLATION_PROCESSED, write_outbox_event
from ride_payments.core.policy import CancellationDecision, CancellationPolicyEngine
from ride_payments.database.connection import get_session_factory
from ride_payments.database.models import (
    ActorRole,
    CaptureItemStatus,
    CaptureQueueItem,
    PaymentIntent,
    PaymentStatus,
    RefundStatus,
    RideCancellation,
    utcnow,
)
from ride_payments.integrations.provider import ProviderTerminalError, ProviderTransientError
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PROCESSING = "processing"
VOIDED = "voided"
FEE_CAPTURED = "fee_captured"
REFUNDED = "refunded"
NO_REFUND = "no_refund"
ALREADY_CANCELED = "already_canceled"


def cancellation_tag(cancellation_id: uuid.UUID) -> str:
    """Source of the fee capture item and reason of the refund a cancellation makes."""
    return f"cancellation:{cancellation_id}"


@dataclass(frozen=True)
class CancellationOutcome:
    """What a cancellation did to the rider's money."""

    cancellation_id: uuid.UUID
    booking_id: uuid.UUID
    payment_intent_id: uuid.UUID
    decision: CancellationDecision
    outcome: str
    original_amount: int
    refund_amount: int
    fee_amount: int
    payment_status: PaymentStatus


@dataclass(frozen=True)
class Settlement:
    outcome: str
    original_amount: int
    refund_amount: int
    fee_amount: int
    intent: PaymentIntent


class CancellationService:
    """Runs the cancellation policy against the ledger."""

    def __init__(
        self,
        ledger: PaymentLedger,
        queue: CaptureQueue,
        policy: Optional[CancellationPolicyEngine] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.ledger = ledger
        self.queue = queue
        self.policy = policy or CancellationPolicyEngine()
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def _open_intent_for_booking(self, booking_id: uuid.UUID) -> PaymentIntent:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentIntent)
                .where(
                    PaymentIntent.booking_id == booking_id,
                    PaymentIntent.status != PaymentStatus.FAILED,
                )
                .order_by(PaymentIntent.created_at.desc())
                .limit(1)
            )
            intent = result.scalar_one_or_none()
        if intent is None:
            raise IntentNotFound(f"No payment intent for booking {booking_id}")
        return intent

    async def get_for_booking(self, booking_id: uuid.UUID) -> Optional[RideCancellation]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(RideCancellation).where(RideCancellation.booking_id == booking_id)
            )
            return result.scalar_one_or_none()

    async def cancel_booking(
        self,
        booking_id: uuid.UUID,
        actor_role: ActorRole,
        departure_time: datetime,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
        cancelled_by: Optional[uuid.UUID] = None,
    ) -> CancellationOutcome:
        """
        Cancel one booking and settle its payment per the policy.

        Idempotent per booking: once a cancellation has completed, repeating
        the request returns its stored outcome and moves no money.

        Raises:
            IntentNotFound: The booking has no payment intent
            ConsistencyConflict: A capture is queued or in flight, or another
                request is cancelling the same booking; retry later
            PaymentValidationError: The intent is in a state that cannot be cancelled
        """
        existing = await self.get_for_booking(booking_id)
        if existing is not None and existing.outcome != PROCESSING:
            return await self._replay(existing)

        now = now or utcnow()
        intent = await self._open_intent_for_booking(booking_id)
        decision = self.policy.decide(actor_role, departure_time, now, ride_id=intent.ride_id)

        cancellation, resumed = await self._claim(
            intent, decision, departure_time=departure_time, reason=reason, cancelled_by=cancelled_by
        )
        if cancellation.outcome != PROCESSING:
            return await self._replay(cancellation)
        if resumed:
            # The first request's decision stands
            decision = self._stored_decision(cancellation)

        log = logger.bind(
            booking_id=str(booking_id),
            payment_intent_id=str(cancellation.payment_intent_id),
            cancellation_id=str(cancellation.id),
            actor_role=decision.actor_role.value,
            refund_percentage=decision.refund_percentage,
        )
        log.info(
            "cancellation_started",
            hours_before_departure=decision.hours_before_departure,
            resumed=resumed,
        )

        try:
            settlement = await self._settle(cancellation, decision, resumed, cancellation.reason)
        except Exception:
            await self._release(cancellation.id)
            raise

        cancellation = await self._complete(cancellation.id, settlement)
        metrics.record_cancellation(decision.actor_role.value, decision.refund_percentage)
        log.info(
            "cancellation_processed",
            outcome=settlement.outcome,
            refund_amount=settlement.refund_amount,
            fee_amount=settlement.fee_amount,
        )
        return self._outcome(cancellation, settlement.intent.status)

    async def cancel_ride(
        self,
        ride_id: uuid.UUID,
        actor_role: ActorRole,
        departure_time: datetime,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
        cancelled_by: Optional[uuid.UUID] = None,
    ) -> List[CancellationOutcome]:
        """
        Cancel every booking on a ride (e.g. the driver cancels the trip).

        Bookings cancelled by an earlier call come back with their stored
        outcome, so a repeated ride cancellation moves no money.
        """
        intents = await self.ledger.intents_for_ride(ride_id)
        booking_ids = []
        for intent in intents:
            if intent.status is PaymentStatus.FAILED or intent.booking_id in booking_ids:
                continue
            if intent.status is PaymentStatus.CANCELED and await self.get_for_booking(
                intent.booking_id
            ) is None:
                # Voided directly, never through a cancellation
                continue
            booking_ids.append(intent.booking_id)

        outcomes = []
        for booking_id in booking_ids:
            outcomes.append(
                await self.cancel_booking(
                    booking_id,
                    actor_role,
                    departure_time,
                    now=now,
                    reason=reason,
                    cancelled_by=cancelled_by,
                )
            )

        logger.info("ride_cancelled", ride_id=str(ride_id), bookings=len(outcomes))
        return outcomes

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _settle(
        self,
        cancellation: RideCancellation,
        decision: CancellationDecision,
        resumed: bool,
        reason: Optional[str],
    ) -> Settlement:
        tag = cancellation_tag(cancellation.id)
        intent = await self.ledger.get(cancellation.payment_intent_id)
        status = intent.status

        if status is PaymentStatus.CANCELED:
            if resumed:
                # Voided by the interrupted attempt
                return Settlement(VOIDED, intent.amount_total, intent.amount_total, 0, intent)
            return Settlement(ALREADY_CANCELED, intent.amount_total, 0, 0, intent)

        if status is PaymentStatus.AUTHORIZED:
            original = intent.amount_total
            refund_amount, fee_amount = decision.split(original)
            if fee_amount == 0:
                intent = await self.ledger.cancel(intent.id, reason=reason)
                return Settlement(VOIDED, original, refund_amount, 0, intent)
            intent = await self._capture_fee(intent.id, fee_amount, tag)
            return self._fee_settlement(intent)

        if status is PaymentStatus.CAPTURE_QUEUED:
            raise ConsistencyConflict(
                f"Capture queued for payment intent {intent.id}; retry after it resolves"
            )

        if status in CAPTURED_STATUSES:
            fee_item = await self._fee_item(intent.id, tag)
            if fee_item is not None and fee_item.status is CaptureItemStatus.COMPLETED:
                return self._fee_settlement(intent)
            if fee_item is not None and fee_item.status in ACTIVE_STATUSES:
                raise ConsistencyConflict(
                    f"Cancellation fee capture for payment intent {intent.id} is still open"
                )
            return await self._refund_share(intent, decision, tag)

        raise PaymentValidationError(f"Cannot cancel a booking whose payment is {status.value}")

    async def _capture_fee(self, intent_id: uuid.UUID, fee_amount: int, tag: str) -> PaymentIntent:
        """
        Capture a cancellation fee under a queue item this request owns.

        The item and the CaptureQueued transition commit together, so the
        fee never races a ride-completed capture. On a transient provider
        error the item goes back to the queue and the worker finishes the
        capture; on a crash or any other error it stays processing until
        lease recovery reconciles it.
        """
        item = await self.queue.enqueue_claimed(intent_id, fee_amount, owner=tag)
        try:
            intent = await self.ledger.capture(intent_id, fee_amount)
        except ProviderTransientError as e:
            await self.ledger.requeue(intent_id, str(e))
            await self.queue.release_for_retry(
                item.id, str(e), self.ledger.settings.capture_backoff_base_seconds
            )
            raise
        except ProviderTerminalError as e:
            await self.queue.fail(item.id, str(e))
            raise

        await self.queue.complete(item.id)
        return intent

    async def _fee_item(self, intent_id: uuid.UUID, tag: str) -> Optional[CaptureQueueItem]:
        items = [item for item in await self.queue.items_for(intent_id) if item.source == tag]
        return items[-1] if items else None

    @staticmethod
    def _fee_settlement(intent: PaymentIntent) -> Settlement:
        fee_amount = intent.amount_captured
        return Settlement(
            FEE_CAPTURED, intent.amount_total, intent.amount_total - fee_amount, fee_amount, intent
        )

    async def _refund_share(
        self, intent: PaymentIntent, decision: CancellationDecision, tag: str
    ) -> Settlement:
        original = intent.amount_captured
        refund_amount, fee_amount = decision.split(original)

        earlier = [
            refund
            for refund in await self.ledger.list_refunds(intent.id)
            if refund.reason == tag and refund.status is not RefundStatus.FAILED
        ]
        if earlier:
            refund_amount = earlier[0].amount
            if earlier[0].status is RefundStatus.PENDING:
                await self.ledger.resume_refund(earlier[0].id)
        else:
            refund_amount = min(refund_amount, await self.ledger.refundable_balance(intent.id))
            if refund_amount > 0:
                await self.ledger.refund(intent.id, refund_amount, reason=tag)

        if refund_amount == 0:
            return Settlement(NO_REFUND, original, 0, fee_amount, intent)
        intent = await self.ledger.get(intent.id)
        return Settlement(REFUNDED, original, refund_amount, fee_amount, intent)

    # ------------------------------------------------------------------
    # Cancellation record
    # ------------------------------------------------------------------

    async def _claim(
        self,
        intent: PaymentIntent,
        decision: CancellationDecision,
        *,
        departure_time: datetime,
        reason: Optional[str],
        cancelled_by: Optional[uuid.UUID],
    ) -> Tuple[RideCancellation, bool]:
        """
        Insert the booking's cancellation row, or take over an abandoned one.

        Returns:
            Tuple[RideCancellation, bool]: The row and whether it was taken
            over from an earlier request
        """
        cancellation = RideCancellation(
            id=uuid.uuid4(),
            ride_id=intent.ride_id,
            booking_id=intent.booking_id,
            payment_intent_id=intent.id,
            cancelled_by=cancelled_by,
            actor_role=decision.actor_role,
            reason=reason,
            departure_time=departure_time,
            hours_before_departure=decision.hours_before_departure,
            refund_percentage=decision.refund_percentage,
            outcome=PROCESSING,
            claimed_at=utcnow(),
        )
        async with self.session_factory() as db:
            db.add(cancellation)
            try:
                await db.commit()
                return cancellation, False
            except IntegrityError:
                await db.rollback()

        return await self._take_over(intent.booking_id), True

    async def _take_over(self, booking_id: uuid.UUID) -> RideCancellation:
        """
        Re-claim a booking's unfinished cancellation.

        Only rows released by a failed request, or whose claim is older than
        the capture lease timeout, can be taken; a live claim means another
        request is settling the booking right now.
        """
        cutoff = utcnow() - timedelta(seconds=self.ledger.settings.capture_lease_timeout_seconds)
        async with self.session_factory() as db:
            existing = (
                await db.execute(
                    select(RideCancellation).where(RideCancellation.booking_id == booking_id)
                )
            ).scalar_one()
            if existing.outcome != PROCESSING:
                return existing

            result = await db.execute(
                update(RideCancellation)
                .where(
                    RideCancellation.id == existing.id,
                    RideCancellation.outcome == PROCESSING,
                    or_(
                        RideCancellation.claimed_at.is_(None),
                        RideCancellation.claimed_at < cutoff,
                    ),
                )
                .values(claimed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount != 1:
            raise ConsistencyConflict(
                f"Booking {booking_id} is already being cancelled; retry after it resolves"
            )
        logger.info(
            "cancellation_resumed", cancellation_id=str(existing.id), booking_id=str(booking_id)
        )
        return existing

    async def _release(self, cancellation_id: uuid.UUID) -> None:
        """Let the next request for the booking pick the cancellation up at once."""
        async with self.session_factory() as db:
            await db.execute(
                update(RideCancellation)
                .where(
                    RideCancellation.id == cancellation_id,
                    RideCancellation.outcome == PROCESSING,
                )
                .values(claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def _complete(
        self, cancellation_id: uuid.UUID, settlement: Settlement
    ) -> RideCancellation:
        intent = settlement.intent
        async with self.session_factory() as db:
            cancellation = await db.get(RideCancellation, cancellation_id)
            cancellation.outcome = settlement.outcome
            cancellation.original_amount = settlement.original_amount
            cancellation.refund_amount = settlement.refund_amount
            cancellation.fee_amount = settlement.fee_amount
            cancellation.claimed_at = None
            cancellation.completed_at = utcnow()
            write_outbox_event(
                db,
                aggregate_id=intent.id,
                aggregate_type="payment_intent",
                event_type=CANCELLATION_PROCESSED,
                payload={
                    "cancellation_id": str(cancellation.id),
                    "ride_id": str(intent.ride_id),
                    "booking_id": str(intent.booking_id),
                    "rider_id": str(intent.rider_id),
                    "driver_id": str(intent.driver_id),
                    "actor_role": cancellation.actor_role.value,
                    "refund_percentage": cancellation.refund_percentage,
                    "refund_amount": settlement.refund_amount,
                    "fee_amount": settlement.fee_amount,
                    "outcome": settlement.outcome,
                    "currency": intent.currency,
                },
            )
            await db.commit()
            return cancellation

    async def _replay(self, cancellation: RideCancellation) -> CancellationOutcome:
        intent = await self.ledger.get(cancellation.payment_intent_id)
        logger.info(
            "cancellation_replayed",
            cancellation_id=str(cancellation.id),
            booking_id=str(cancellation.booking_id),
            outcome=cancellation.outcome,
        )
        return self._outcome(cancellation, intent.status)

    @staticmethod
    def _stored_decision(cancellation: RideCancellation) -> CancellationDecision:
        return CancellationDecision(
            ride_id=cancellation.ride_id,
            actor_role=cancellation.actor_role,
            hours_before_departure=cancellation.hours_before_departure,
            refund_percentage=cancellation.refund_percentage,
        )

    def _outcome(
        self, cancellation: RideCancellation, payment_status: PaymentStatus
    ) -> CancellationOutcome:
        return CancellationOutcome(
            cancellation_id=cancellation.id,
            booking_id=cancellation.booking_id,
            payment_intent_id=cancellation.payment_intent_id,
            decision=self._stored_decision(cancellation),
            outcome=cancellation.outcome,
            original_amount=cancellation.original_amount,
            refund_amount=cancellation.refund_amount,
            fee_amount=cancellation.fee_amount,
            payment_status=payment_status,
        )
