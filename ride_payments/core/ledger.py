"""
Payment ledger: the authoritative state machine for each payment intent.

Legal transitions:

    PENDING_AUTHORIZATION → AUTHORIZED | FAILED
    AUTHORIZED            → CAPTURE_QUEUED | CANCELED
    CAPTURE_QUEUED        → CAPTURED | AUTHORIZED (requeued) | FAILED
    CAPTURED              → REFUNDED | PARTIALLY_REFUNDED
    PARTIALLY_REFUNDED    → PARTIALLY_REFUNDED | REFUNDED

Every write to an intent goes through SQLAlchemy's version check, so two
writers racing on one intent can never both commit; the loser gets
ConsistencyConflict. Provider calls are never made while a write is
pending, and an ambiguous provider failure (timeout, connection reset) is
resolved by re-querying the provider rather than by assuming an outcome.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from tenacity import retry, retry_if_exception_type, stop_after_attempt

from ride_payments.config import Settings, get_settings
from ride_payments.core.capture_queue import find_active_item
from ride_payments.core.earnings import EarningsPoster
from ride_payments.core.errors import (
    ConsistencyConflict,
    IntentNotFound,
    PaymentValidationError,
    PolicyViolation,
)
from ride_payments.core.idempotency import IdempotencyKeys
from ride_payments.core.money import percent_of
from ride_payments.core.outbox import PAYMENT_CAPTURED, PAYMENT_REFUNDED, write_outbox_event
from ride_payments.core.referrals import ReferralDiscountResolver
from ride_payments.database.connection import get_session_factory
from ride_payments.database.models import (
    PaymentEvent,
    PaymentIntent,
    PaymentRefund,
    PaymentStatus,
    RefundStatus,
    utcnow,
)
from ride_payments.integrations.provider import (
    ProviderGateway,
    ProviderIntentStatus,
    ProviderTerminalError,
    ProviderTransientError,
    RefundResult,
)
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING_AUTHORIZATION: frozenset(
        {PaymentStatus.AUTHORIZED, PaymentStatus.FAILED}
    ),
    PaymentStatus.AUTHORIZED: frozenset({PaymentStatus.CAPTURE_QUEUED, PaymentStatus.CANCELED}),
    PaymentStatus.CAPTURE_QUEUED: frozenset(
        {PaymentStatus.CAPTURED, PaymentStatus.AUTHORIZED, PaymentStatus.FAILED}
    ),
    PaymentStatus.CAPTURED: frozenset(
        {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}
    ),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset(
        {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}
    ),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.CANCELED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}

# Statuses in which the money has already been taken
CAPTURED_STATUSES = frozenset(
    {PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}
)
REFUNDABLE_STATUSES = frozenset({PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED})
CLOSED_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELED})

AGGREGATE_TYPE = "payment_intent"


class PaymentLedger:
    """
    State machine and money movements for payment intents.

    Handles authorization holds, deferred capture, voids and refunds, keeping
    the audit trail, driver earnings, referral grants and notification
    outbox in step with every transition.
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        earnings: Optional[EarningsPoster] = None,
        referrals: Optional[ReferralDiscountResolver] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.gateway = gateway
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.earnings = earnings or EarningsPoster(
            session_factory, self.settings.platform_fee_percent
        )
        self.referrals = referrals or ReferralDiscountResolver(
            session_factory, self.settings.referral_discount_percent
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _record_event(
        db: AsyncSession,
        intent: PaymentIntent,
        event_type: str,
        from_status: Optional[PaymentStatus] = None,
        to_status: Optional[PaymentStatus] = None,
        **event_data: Any,
    ) -> None:
        db.add(
            PaymentEvent(
                payment_intent_id=intent.id,
                event_type=event_type,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value if to_status else None,
                event_data=event_data,
            )
        )

    def transition(
        self,
        db: AsyncSession,
        intent: PaymentIntent,
        to_status: PaymentStatus,
        event_type: str,
        **event_data: Any,
    ) -> None:
        """
        Move ``intent`` to ``to_status`` and stage the audit event.

        Raises:
            PaymentValidationError: If the edge is not in ALLOWED_TRANSITIONS
        """
        from_status = intent.status
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise PaymentValidationError(
                f"Illegal transition {from_status.value} -> {to_status.value} "
                f"for payment intent {intent.id}"
            )

        intent.status = to_status
        self._record_event(db, intent, event_type, from_status, to_status, **event_data)
        metrics.record_transition(from_status.value, to_status.value)

        logger.info(
            "payment_transition",
            payment_intent_id=str(intent.id),
            from_status=from_status.value,
            to_status=to_status.value,
            event_type=event_type,
        )

    @staticmethod
    async def _commit(db: AsyncSession, intent_id: uuid.UUID) -> None:
        try:
            await db.commit()
        except (StaleDataError, IntegrityError) as e:
            await db.rollback()
            logger.warning("payment_intent_conflict", payment_intent_id=str(intent_id), error=str(e))
            raise ConsistencyConflict(
                f"Payment intent {intent_id} was modified concurrently"
            ) from e

    @staticmethod
    async def _load(db: AsyncSession, intent_id: uuid.UUID) -> PaymentIntent:
        intent = await db.get(PaymentIntent, intent_id)
        if intent is None:
            raise IntentNotFound(f"Payment intent {intent_id} not found")
        return intent

    @staticmethod
    async def _pending_refund_total(db: AsyncSession, intent_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(PaymentRefund.amount), 0)).where(
                PaymentRefund.payment_intent_id == intent_id,
                PaymentRefund.status == RefundStatus.PENDING,
            )
        )
        return int(result.scalar_one())

    async def _provider_captured_amount(
        self, intent: PaymentIntent, error: ProviderTransientError
    ) -> int:
        """
        Resolve an ambiguous capture by asking the provider what happened.

        Returns the captured amount if the capture landed, otherwise re-raises
        the transient error it was given.
        """
        try:
            snapshot = await self.gateway.retrieve(intent.external_ref)
        except ProviderTransientError:
            raise error
        if not snapshot.provider_status.captured:
            raise error

        logger.info(
            "capture_confirmed_after_transient_error",
            payment_intent_id=str(intent.id),
            amount_received=snapshot.amount_received,
            error=str(error),
        )
        return snapshot.amount_received

    async def _finalize_capture(
        self,
        db: AsyncSession,
        intent: PaymentIntent,
        captured_amount: int,
        already_captured: bool,
    ) -> None:
        """Stage Captured plus earnings, referral settlement, audit and outbox."""
        self.transition(
            db,
            intent,
            PaymentStatus.CAPTURED,
            "payment.captured",
            captured_amount=captured_amount,
            already_captured=already_captured,
        )
        intent.amount_captured = captured_amount
        intent.captured_at = utcnow()
        intent.last_error = None

        await self.earnings.post_capture(db, intent, captured_amount)
        await self.referrals.consume_on_capture(db, intent)
        write_outbox_event(
            db,
            aggregate_id=intent.id,
            aggregate_type=AGGREGATE_TYPE,
            event_type=PAYMENT_CAPTURED,
            payload={
                "payment_intent_id": str(intent.id),
                "booking_id": str(intent.booking_id),
                "rider_id": str(intent.rider_id),
                "driver_id": str(intent.driver_id),
                "amount_total": intent.amount_total,
                "captured_amount": captured_amount,
                "currency": intent.currency,
            },
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, intent_id: uuid.UUID) -> PaymentIntent:
        async with self.session_factory() as db:
            return await self._load(db, intent_id)

    async def get_by_booking(self, booking_id: uuid.UUID) -> PaymentIntent:
        """Latest intent for a booking."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentIntent)
                .where(PaymentIntent.booking_id == booking_id)
                .order_by(PaymentIntent.created_at.desc())
                .limit(1)
            )
            intent = result.scalar_one_or_none()
        if intent is None:
            raise IntentNotFound(f"No payment intent for booking {booking_id}")
        return intent

    async def intents_for_ride(self, ride_id: uuid.UUID) -> List[PaymentIntent]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentIntent)
                .where(PaymentIntent.ride_id == ride_id)
                .order_by(PaymentIntent.created_at)
            )
            return list(result.scalars().all())

    async def refundable_balance(self, intent_id: uuid.UUID) -> int:
        """Captured cents not yet refunded or promised to a pending refund."""
        async with self.session_factory() as db:
            intent = await self._load(db, intent_id)
            return intent.refundable_amount - await self._pending_refund_total(db, intent.id)

    async def list_events(self, intent_id: uuid.UUID) -> List[PaymentEvent]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentEvent)
                .where(PaymentEvent.payment_intent_id == intent_id)
                .order_by(PaymentEvent.id)
            )
            return list(result.scalars().all())

    async def list_refunds(self, intent_id: uuid.UUID) -> List[PaymentRefund]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentRefund)
                .where(PaymentRefund.payment_intent_id == intent_id)
                .order_by(PaymentRefund.created_at)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def authorize(
        self,
        *,
        ride_id: uuid.UUID,
        booking_id: uuid.UUID,
        rider_id: uuid.UUID,
        driver_id: uuid.UUID,
        subtotal: int,
        discount_amount: Optional[int] = None,
        customer_ref: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Create the intent for a booking and place the provider hold.

        When ``discount_amount`` is omitted the rider's best pending referral
        grant is reserved and applied. A booking that already has an open
        intent gets that intent back instead of a second hold. The total
        after discount must stay at least one cent, since a hold needs a
        positive amount; a referral discount is capped to leave that cent.

        Raises:
            PaymentValidationError: Bad amounts
            ProviderTerminalError: The hold was declined (intent is Failed)
            ProviderTransientError: Outcome unknown (intent stays pending;
                retry with ``resume_authorization``)
        """
        if subtotal <= 0:
            raise PaymentValidationError("Subtotal must be positive")
        if discount_amount is not None and not 0 <= discount_amount < subtotal:
            raise PaymentValidationError("Discount must be non-negative and below the subtotal")

        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentIntent).where(
                    PaymentIntent.booking_id == booking_id,
                    PaymentIntent.status.not_in(tuple(CLOSED_STATUSES)),
                )
            )
            existing = result.scalars().first()
            if existing is not None:
                logger.info(
                    "payment_intent_exists_for_booking",
                    payment_intent_id=str(existing.id),
                    booking_id=str(booking_id),
                    status=existing.status.value,
                )
                if existing.status is not PaymentStatus.PENDING_AUTHORIZATION:
                    return existing
                intent_id = existing.id
            else:
                intent_id = uuid.uuid4()
                grant = None
                if discount_amount is None:
                    grant = await self.referrals.reserve_for(db, rider_id, intent_id)
                    discount_amount = percent_of(subtotal, grant.percent) if grant else 0
                    # The provider cannot hold a zero amount
                    discount_amount = min(discount_amount, subtotal - 1)

                intent = PaymentIntent(
                    id=intent_id,
                    ride_id=ride_id,
                    booking_id=booking_id,
                    rider_id=rider_id,
                    driver_id=driver_id,
                    customer_ref=customer_ref,
                    amount_subtotal=subtotal,
                    discount_amount=discount_amount,
                    amount_total=subtotal - discount_amount,
                    currency=self.settings.currency,
                    capture_method="manual",
                    status=PaymentStatus.PENDING_AUTHORIZATION,
                    referral_grant_id=grant.id if grant else None,
                )
                db.add(intent)
                self._record_event(
                    db,
                    intent,
                    "payment.created",
                    to_status=PaymentStatus.PENDING_AUTHORIZATION,
                    amount_subtotal=subtotal,
                    discount_amount=discount_amount,
                    amount_total=intent.amount_total,
                    referral_grant_id=str(grant.id) if grant else None,
                )
                await self._commit(db, intent_id)

                logger.info(
                    "payment_intent_created",
                    payment_intent_id=str(intent_id),
                    booking_id=str(booking_id),
                    amount_subtotal=subtotal,
                    discount_amount=discount_amount,
                    amount_total=intent.amount_total,
                )

        return await self._drive_authorization(intent_id)

    async def resume_authorization(self, intent_id: uuid.UUID) -> PaymentIntent:
        """
        Re-drive an authorization left pending by an ambiguous provider failure.

        Reuses the first attempt's idempotency key, so the provider returns the hold
        it may already have placed rather than placing a second one.
        """
        return await self._drive_authorization(intent_id)

    async def _drive_authorization(self, intent_id: uuid.UUID) -> PaymentIntent:
        async with self.session_factory() as db:
            intent = await self._load(db, intent_id)
            if intent.status is not PaymentStatus.PENDING_AUTHORIZATION:
                return intent

            try:
                if intent.external_ref:
                    snapshot = await self.gateway.retrieve(intent.external_ref)
                    external_ref, provider_status = snapshot.external_ref, snapshot.provider_status
                else:
                    result = await self.gateway.authorize(
                        intent.amount_total,
                        intent.customer_ref,
                        currency=intent.currency,
                        idempotency_key=IdempotencyKeys.authorize(intent.id),
                        metadata={
                            "payment_intent_id": str(intent.id),
                            "booking_id": str(intent.booking_id),
                            "ride_id": str(intent.ride_id),
                        },
                    )
                    external_ref, provider_status = result.external_ref, result.provider_status
            except ProviderTerminalError as e:
                self.transition(
                    db, intent, PaymentStatus.FAILED, "payment.authorization_declined",
                    error=str(e), code=e.code,
                )
                intent.last_error = str(e)
                await self.referrals.release(db, intent)
                await self._commit(db, intent.id)
                logger.error(
                    "payment_authorization_declined",
                    payment_intent_id=str(intent.id),
                    error=str(e),
                )
                raise
            except ProviderTransientError as e:
                intent.last_error = str(e)
                self._record_event(db, intent, "payment.authorization_unknown", error=str(e))
                await self._commit(db, intent.id)
                logger.warning(
                    "payment_authorization_outcome_unknown",
                    payment_intent_id=str(intent.id),
                    error=str(e),
                )
                raise

            intent.external_ref = external_ref
            if provider_status.capturable:
                self.transition(
                    db, intent, PaymentStatus.AUTHORIZED, "payment.authorized",
                    external_ref=external_ref,
                )
                intent.authorized_at = utcnow()
                intent.last_error = None
                metrics.record_authorization(intent.amount_total)
            elif provider_status is ProviderIntentStatus.CANCELED:
                self.transition(
                    db, intent, PaymentStatus.FAILED, "payment.authorization_canceled",
                    external_ref=external_ref,
                )
                intent.last_error = "Provider canceled the authorization"
                await self.referrals.release(db, intent)
            else:
                intent.last_error = f"Awaiting provider confirmation ({provider_status.value})"
                self._record_event(
                    db, intent, "payment.authorization_pending",
                    external_ref=external_ref, provider_status=provider_status.value,
                )

            await self._commit(db, intent.id)
            return intent

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def begin_capture(self, intent_id: uuid.UUID) -> PaymentIntent:
        """
        Authorized → CaptureQueued for the holder of the intent's capture item.

        Only the caller that claimed the intent's processing queue item may
        call this; already-queued intents are then returned as is. Code that
        holds no item goes through ``CaptureQueue.enqueue_claimed`` instead.
        """
        async with self.session_factory() as db:
            intent = await self._load(db, intent_id)
            if intent.status is PaymentStatus.CAPTURE_QUEUED:
                return intent
            self.transition(db, intent, PaymentStatus.CAPTURE_QUEUED, "payment.capture_started")
            await self._commit(db, intent.id)
            return intent

    async def capture(self, intent_id: uuid.UUID, amount: Optional[int] = None) -> PaymentIntent:
        """
        Capture ``amount`` cents (default: the full total) of a queued intent.

        A provider "already captured" answer, or a transient error after which
        the provider shows the money taken, both finalize as success. Calling
        this on an intent that is already captured is a no-op.

        Raises:
            PaymentValidationError: Intent not CaptureQueued, or bad amount
            ProviderTransientError: Capture did not land; safe to retry
            ProviderTerminalError: Provider refused; intent is now Failed
            ConsistencyConflict: Intent changed underneath us
        """
        async with self.session_factory() as db:
            intent = await self._load(db, intent_id)
            if intent.status in CAPTURED_STATUSES:
                logger.info(
                    "payment_already_captured",
                    payment_intent_id=str(intent.id),
                    status=intent.status.value,
                )
                return intent
            if intent.status is not PaymentStatus.CAPTURE_QUEUED:
                raise PaymentValidationError(
                    f"Cannot capture a {intent.status.value} payment intent"
                )

            amount = intent.amount_total if amount is None else amount
            if not 0 < amount <= intent.amount_total:
                raise PaymentValidationError("Capture amount must be within the authorized total")

            try:
                result = await self.gateway.capture(
                    intent.external_ref,
                    amount,
                    idempotency_key=IdempotencyKeys.capture(intent.id, amount),
                )
                captured_amount = result.captured_amount
                already_captured = result.already_captured
            except ProviderTransientError as e:
                captured_amount = await self._provider_captured_amount(intent, e)
                already_captured = True
            except ProviderTerminalError as e:
                self.transition(
                    db, intent, PaymentStatus.FAILED, "payment.capture_declined",
                    error=str(e), code=e.code,
                )
                intent.last_error = str(e)
                await self.referrals.release(db, intent)
                await self._commit(db, intent.id)
                logger.error(
                    "payment_capture_declined",
                    payment_intent_id=str(intent.id),
                    error=str(e),
                )
                raise

            await self._finalize_capture(db, intent, captured_amount, already_captured)
            await self._commit(db, intent.id)

        logger.info(
            "payment_captured",
            payment_intent_id=str(intent_id),
            captured_amount=captured_amount,
            already_captured=already_captured,
        )
        return intent

    async def reconcile_capture(self, intent_id: uuid.UUID, captured_amount: int) -> PaymentIntent:
        """
        Record a capture the provider reports as done but the ledger missed.

        Used when a worker crashed or timed out after the provider took the
        money. Intents already captured are returned unchanged.
        """
        async with self.session_factory() as db:
            intent = await self._load(db, intent_id)
            if intent.status in CAPTURED_STATUSES:
                return intent
            if intent.status is PaymentStatus.AUTHORIZED:
                self.transition(
                    db, intent, PaymentStatus.CAPTURE_QUEUED, "payment.capture_started",
                    source="reconciliation",
                )
            if intent.status is not PaymentStatus.CAPTURE_QUEUED:
                raise PaymentValidationError(
                    f"Cannot reconcile a capture for a {intent.status.value} payment intent"
                )

            await self._finalize_capture(db, intent, captured_amount, already_captured=True)
            await self._commit(db, intent.id)

        logger.info(
            "payment_capture_reconciled",
            payment_intent_id=str(intent_id),
            captured_amount=captured_amount,
        )
        return intent

    async def requeue(self, intent_id: uuid.UUID, error: str) -> PaymentIntent:
        """CaptureQueued → Authorized after a transient capture failure."""
        async with self.session_factory() as db:
            intent = await self._load(db, intent_id)
            if intent.status is not PaymentStatus.AUTHORIZED:
                self.transition(
                    db, intent, PaymentStatus.AUTHORIZED, "payment.capture_requeued", error=error
                )
            intent.last_error = error
            await self._commit(db, intent.id)
            return intent

    async def fail(self, intent_id: uuid.UUID, error: str) -> PaymentIntent:
        """Mark an intent Failed for manual remediation. Already-failed intents are a no-op."""
        async with self.session_factory() as db:
            intent = await self._load(db, intent_id)
            if intent.status is PaymentStatus.FAILED:
                return intent
            if intent.status is PaymentStatus.AUTHORIZED:
                # A capture item died before the intent was marked queued
                self.transition(
                    db, intent, PaymentStatus.CAPTURE_QUEUED, "payment.capture_started"
                )
            self.transition(db, intent, PaymentStatus.FAILED, "payment.failed", error=error)
            intent.last_error = error
            await self.referrals.release(db, intent)
            await self._commit(db, intent.id)

        logger.error("payment_failed", payment_intent_id=str(intent_id), error=error)
        return intent

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, intent_id: uuid.UUID, reason: Optional[str] = None) -> PaymentIntent:
        """
        Void the hold of an Authorized intent.

        Cancelling an already-cancelled intent succeeds without side effects.

        Raises:
            ConsistencyConflict: A capture is queued or in flight for the intent
            PaymentValidationError: The intent is past the point of voiding
        """
        async with self.session_factory() as db:
            intent = await self._load(db, intent_id)
            if intent.status is PaymentStatus.CANCELED:
                logger.info("payment_already_canceled", payment_intent_id=str(intent.id))
                return intent

            active_item = await find_active_item(db, intent.id)
            if active_item is not None:
                raise ConsistencyConflict(
                    f"Capture {active_item.status.value} for payment intent {intent.id}; "
                    "retry after it resolves"
                )
            if intent.status is not PaymentStatus.AUTHORIZED:
                raise PaymentValidationError(
                    f"Cannot cancel a {intent.status.value} payment intent"
                )

            try:
                await self.gateway.cancel(
                    intent.external_ref, idempotency_key=IdempotencyKeys.cancel(intent.id)
                )
            except ProviderTransientError as e:
                try:
                    snapshot = await self.gateway.retrieve(intent.external_ref)
                except ProviderTransientError:
                    raise e
                if snapshot.provider_status is not ProviderIntentStatus.CANCELED:
                    raise e

            self.transition(db, intent, PaymentStatus.CANCELED, "payment.canceled", reason=reason)
            intent.canceled_at = utcnow()
            await self.referrals.release(db, intent)
            await self._commit(db, intent.id)

        logger.info("payment_canceled", payment_intent_id=str(intent_id), reason=reason)
        return intent

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund(
        self, intent_id: uuid.UUID, amount: int, reason: Optional[str] = None
    ) -> PaymentRefund:
        """
        Refund ``amount`` cents of captured funds.

        The refund row is committed as pending before the provider is called,
        so concurrent refunds see each other's amounts against the balance and
        the pair can never exceed what was captured.

        Raises:
            PaymentValidationError: Intent not refundable, or bad amount
            PolicyViolation: Amount above the remaining balance
            ProviderTransientError: Outcome unknown; retry with ``resume_refund``
            ProviderTerminalError: Provider refused; refund is Failed
        """
        if amount <= 0:
            raise PaymentValidationError("Refund amount must be positive")

        async with self.session_factory() as db:
            intent = await self._load(db, intent_id)
            if intent.status not in REFUNDABLE_STATUSES:
                raise PaymentValidationError(
                    f"Cannot refund a {intent.status.value} payment intent"
                )
            if await find_active_item(db, intent.id) is not None:
                raise ConsistencyConflict(f"Capture in flight for payment intent {intent.id}")

            remaining = intent.refundable_amount - await self._pending_refund_total(db, intent.id)
            if amount > remaining:
                raise PolicyViolation(
                    f"Refund of {amount} exceeds remaining balance of {remaining}"
                )

            refund = PaymentRefund(
                id=uuid.uuid4(),
                payment_intent_id=intent.id,
                amount=amount,
                reason=reason,
                status=RefundStatus.PENDING,
            )
            db.add(refund)
            # Touching the row bumps its version so concurrent refunds serialize
            intent.updated_at = utcnow()
            self._record_event(
                db, intent, "payment.refund_requested",
                refund_id=str(refund.id), amount=amount, reason=reason,
            )
            await self._commit(db, intent.id)

        logger.info(
            "refund_requested",
            payment_intent_id=str(intent_id),
            refund_id=str(refund.id),
            amount_cents=amount,
        )
        return await self._drive_refund(refund.id)

    async def resume_refund(self, refund_id: uuid.UUID) -> PaymentRefund:
        """Re-drive a refund whose provider call ended ambiguously."""
        return await self._drive_refund(refund_id)

    async def _drive_refund(self, refund_id: uuid.UUID) -> PaymentRefund:
        async with self.session_factory() as db:
            refund = await db.get(PaymentRefund, refund_id)
            if refund is None:
                raise PaymentValidationError(f"Refund {refund_id} not found")
            if refund.status is RefundStatus.SUCCEEDED:
                return refund
            if refund.status is RefundStatus.FAILED:
                raise PaymentValidationError(f"Refund {refund_id} already failed")
            intent = await self._load(db, refund.payment_intent_id)

        try:
            result = await self.gateway.refund(
                intent.external_ref,
                refund.amount,
                idempotency_key=IdempotencyKeys.refund(intent.id, refund.id),
                reason=refund.reason,
            )
            if result.provider_status in ("failed", "canceled"):
                raise ProviderTerminalError(
                    f"Provider reported refund {result.refund_ref} as {result.provider_status}"
                )
        except ProviderTerminalError as e:
            await self._mark_refund_failed(refund.id, str(e))
            metrics.record_refund("failed", refund.amount)
            raise
        except ProviderTransientError as e:
            async with self.session_factory() as db:
                pending = await db.get(PaymentRefund, refund.id)
                pending.error_message = str(e)
                await db.commit()
            logger.warning(
                "refund_outcome_unknown",
                payment_intent_id=str(intent.id),
                refund_id=str(refund.id),
                error=str(e),
            )
            raise

        return await self._finalize_refund(refund_id, result)

    @retry(
        retry=retry_if_exception_type(ConsistencyConflict),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _finalize_refund(self, refund_id: uuid.UUID, result: RefundResult) -> PaymentRefund:
        """
        Book a refund the provider has accepted.

        The money has already moved, so a version conflict with another
        writer is retried against fresh state instead of surfacing.
        """
        async with self.session_factory() as db:
            refund = await db.get(PaymentRefund, refund_id)
            if refund.status is RefundStatus.SUCCEEDED:
                return refund
            intent = await self._load(db, refund.payment_intent_id)

            refund.status = RefundStatus.SUCCEEDED
            refund.provider_refund_ref = result.refund_ref
            refund.completed_at = utcnow()
            refund.error_message = None

            intent.amount_refunded += refund.amount
            to_status = (
                PaymentStatus.REFUNDED
                if intent.amount_refunded >= intent.amount_captured
                else PaymentStatus.PARTIALLY_REFUNDED
            )
            self.transition(
                db, intent, to_status, "payment.refunded",
                refund_id=str(refund.id), amount=refund.amount,
                amount_refunded=intent.amount_refunded,
            )
            intent.refunded_at = utcnow()

            await self.earnings.apply_refund(db, intent, refund)
            write_outbox_event(
                db,
                aggregate_id=intent.id,
                aggregate_type=AGGREGATE_TYPE,
                event_type=PAYMENT_REFUNDED,
                payload={
                    "payment_intent_id": str(intent.id),
                    "booking_id": str(intent.booking_id),
                    "rider_id": str(intent.rider_id),
                    "refund_id": str(refund.id),
                    "amount": refund.amount,
                    "amount_refunded": intent.amount_refunded,
                    "currency": intent.currency,
                    "reason": refund.reason,
                },
            )
            await self._commit(db, intent.id)

        metrics.record_refund("succeeded", refund.amount)
        logger.info(
            "refund_succeeded",
            payment_intent_id=str(intent.id),
            refund_id=str(refund.id),
            amount_cents=refund.amount,
            status=intent.status.value,
        )
        return refund

    async def _mark_refund_failed(self, refund_id: uuid.UUID, error: str) -> None:
        async with self.session_factory() as db:
            refund = await db.get(PaymentRefund, refund_id)
            refund.status = RefundStatus.FAILED
            refund.error_message = error
            refund.completed_at = utcnow()
            intent = await self._load(db, refund.payment_intent_id)
            self._record_event(
                db, intent, "payment.refund_failed", refund_id=str(refund_id), error=error
            )
            await db.commit()

        logger.error("refund_failed", refund_id=str(refund_id), error=error)
