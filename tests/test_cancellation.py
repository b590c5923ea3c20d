"""
Tests for cancellation orchestration.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy import select

from ride_payments.core.cancellation import (
    ALREADY_CANCELED,
    FEE_CAPTURED,
    NO_REFUND,
    PROCESSING,
    REFUNDED,
    VOIDED,
    cancellation_tag,
)
from ride_payments.core.errors import ConsistencyConflict, IntentNotFound
from ride_payments.database.models import (
    ActorRole,
    CaptureItemStatus,
    OutboxEvent,
    PaymentStatus,
    RefundStatus,
    RideCancellation,
    utcnow,
)
from ride_payments.integrations.provider import ProviderTransientError

NOW = datetime(2026, 5, 4, 8, 0, tzinfo=timezone.utc)


def departs_in(hours: float) -> datetime:
    return NOW + timedelta(hours=hours)


class TestCancelAuthorized:
    """Cancellations before the ride has been captured."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_driver_cancel_voids_hold(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await authorize_booking(subtotal=2700)

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.DRIVER, departs_in(2), now=NOW
        )

        assert outcome.outcome == VOIDED
        assert outcome.refund_amount == 2700
        assert outcome.fee_amount == 0
        assert outcome.payment_status is PaymentStatus.CANCELED
        assert gateway.call_count("cancel") == 1
        assert gateway.captures == []
        assert await services.earnings.get_for_booking(intent.booking_id) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_passenger_late_cancel_captures_half(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await authorize_booking(subtotal=3000)

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
        )

        assert outcome.outcome == FEE_CAPTURED
        assert outcome.decision.refund_percentage == 50
        assert outcome.fee_amount == 1500
        assert outcome.refund_amount == 1500
        assert gateway.captures == [(intent.external_ref, 1500)]

        reloaded = await services.ledger.get(intent.id)
        assert reloaded.status is PaymentStatus.CAPTURED
        assert reloaded.amount_captured == 1500

        record = await services.earnings.get_for_booking(intent.booking_id)
        assert record.gross_amount == 1500
        assert record.platform_fee == 225
        assert record.net_amount == 1275

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_passenger_no_show_window_keeps_everything(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await authorize_booking(subtotal=3000)

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.PASSENGER, departs_in(3), now=NOW
        )

        assert outcome.outcome == FEE_CAPTURED
        assert outcome.fee_amount == 3000
        assert outcome.refund_amount == 0
        assert gateway.captures == [(intent.external_ref, 3000)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fee_capture_timeout_left_to_worker(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await authorize_booking(subtotal=3000)
        gateway.fail_next("capture", ProviderTransientError("Stripe 503"))
        gateway.fail_next("retrieve", ProviderTransientError("Stripe 503"))

        with pytest.raises(ProviderTransientError):
            await services.cancellations.cancel_booking(
                intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
            )

        # The fee stays queued for the worker instead of being dropped
        assert (await services.ledger.get(intent.id)).status is PaymentStatus.AUTHORIZED
        [item] = await services.queue.items_for(intent.id)
        assert item.status is CaptureItemStatus.PENDING
        assert item.amount_cents == 1500

        with pytest.raises(ConsistencyConflict):
            await services.cancellations.cancel_booking(
                intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
            )

        assert (await services.worker.run_once())["succeeded"] == 1

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
        )
        assert outcome.outcome == FEE_CAPTURED
        assert outcome.fee_amount == 1500
        assert outcome.refund_amount == 1500
        assert gateway.captures == [(intent.external_ref, 1500)]
        assert gateway.refunds == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_queued_capture_must_resolve_first(
        self, authorize_booking: Any, services: Any
    ) -> None:
        intent = await authorize_booking()
        await services.queue.enqueue(intent.id)

        with pytest.raises(ConsistencyConflict):
            await services.cancellations.cancel_booking(
                intent.booking_id, ActorRole.DRIVER, departs_in(30), now=NOW
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ride_completion_landing_mid_cancellation_blocks_fee_capture(
        self, authorize_booking: Any, services: Any, gateway: Any, mocker: Any
    ) -> None:
        """The intent was read as Authorized, then the ride-completed capture got queued."""
        intent = await authorize_booking(subtotal=3000)
        await services.queue.enqueue(intent.id)
        mocker.patch.object(services.ledger, "get", mocker.AsyncMock(return_value=intent))

        with pytest.raises(ConsistencyConflict):
            await services.cancellations.cancel_booking(
                intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
            )

        assert gateway.captures == []
        [item] = await services.queue.items_for(intent.id)
        assert item.source is None
        assert item.status is CaptureItemStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_interrupted_fee_capture_recovered_by_lease_expiry(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await authorize_booking(subtotal=3000)

        with patch.object(services.ledger, "capture", side_effect=RuntimeError("process died")):
            with pytest.raises(RuntimeError):
                await services.cancellations.cancel_booking(
                    intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
                )

        # The fee capture is owned by a processing item, never a bare CaptureQueued intent
        [item] = await services.queue.items_for(intent.id)
        assert item.status is CaptureItemStatus.PROCESSING
        assert item.source == cancellation_tag(
            (await services.cancellations.get_for_booking(intent.booking_id)).id
        )
        assert (await services.ledger.get(intent.id)).status is PaymentStatus.CAPTURE_QUEUED

        summary = await services.worker.run_once(now=utcnow() + timedelta(hours=1))
        assert summary["recovered"] == 1
        assert summary["succeeded"] == 1

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
        )
        assert outcome.outcome == FEE_CAPTURED
        assert outcome.fee_amount == 1500
        assert gateway.captures == [(intent.external_ref, 1500)]
        assert gateway.refunds == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeat_cancel_replays_stored_outcome(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await authorize_booking()
        first = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.DRIVER, departs_in(30), now=NOW
        )

        again = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.DRIVER, departs_in(30), now=NOW
        )

        assert again.outcome == VOIDED
        assert again.cancellation_id == first.cancellation_id
        assert again.refund_amount == first.refund_amount
        assert gateway.call_count("cancel") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeat_fee_cancel_moves_no_money(
        self, authorize_booking: Any, services: Any, gateway: Any, session_factory: Any
    ) -> None:
        intent = await authorize_booking(subtotal=3000)
        first = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
        )

        # A client retry, hours later, must not turn the captured fee into a refund
        again = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW + timedelta(hours=10)
        )

        assert again.outcome == FEE_CAPTURED
        assert again.fee_amount == first.fee_amount == 1500
        assert again.decision.refund_percentage == 50
        assert gateway.captures == [(intent.external_ref, 1500)]
        assert gateway.refunds == []

        async with session_factory() as db:
            rows = (await db.execute(select(RideCancellation))).scalars().all()
            events = (
                await db.execute(
                    select(OutboxEvent).where(OutboxEvent.event_type == "cancellation_processed")
                )
            ).scalars().all()
        assert len(rows) == 1
        assert len(events) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_after_direct_void_reports_already_canceled(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await authorize_booking()
        await services.ledger.cancel(intent.id)

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.DRIVER, departs_in(30), now=NOW
        )

        assert outcome.outcome == ALREADY_CANCELED
        assert outcome.refund_amount == 0
        assert gateway.call_count("cancel") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_cancel_of_same_booking_rejected(
        self, authorize_booking: Any, services: Any, session_factory: Any
    ) -> None:
        intent = await authorize_booking()
        async with session_factory() as db:
            db.add(
                RideCancellation(
                    ride_id=intent.ride_id,
                    booking_id=intent.booking_id,
                    payment_intent_id=intent.id,
                    actor_role=ActorRole.DRIVER,
                    departure_time=departs_in(30),
                    hours_before_departure=30.0,
                    refund_percentage=100,
                    outcome=PROCESSING,
                    claimed_at=utcnow(),
                )
            )
            await db.commit()

        with pytest.raises(ConsistencyConflict, match="already being cancelled"):
            await services.cancellations.cancel_booking(
                intent.booking_id, ActorRole.DRIVER, departs_in(30), now=NOW
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_booking(self, services: Any) -> None:
        with pytest.raises(IntentNotFound):
            await services.cancellations.cancel_booking(
                uuid.uuid4(), ActorRole.PASSENGER, departs_in(30), now=NOW
            )


class TestCancelCaptured:
    """Cancellations after the money was taken turn into refunds."""

    async def _captured(self, authorize_booking: Any, services: Any, subtotal: int = 3000) -> Any:
        intent = await authorize_booking(subtotal=subtotal)
        await services.queue.enqueue(intent.id)
        await services.worker.run_once()
        return await services.ledger.get(intent.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_captured_passenger_cancel_refunds_half(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await self._captured(authorize_booking, services)
        assert intent.status is PaymentStatus.CAPTURED

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
        )

        assert outcome.outcome == REFUNDED
        assert outcome.refund_amount == 1500
        assert outcome.fee_amount == 1500
        assert outcome.payment_status is PaymentStatus.PARTIALLY_REFUNDED
        assert gateway.refunds == [(intent.external_ref, 1500)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_captured_driver_cancel_refunds_everything(
        self, authorize_booking: Any, services: Any
    ) -> None:
        intent = await self._captured(authorize_booking, services)

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.DRIVER, departs_in(1), now=NOW
        )

        assert outcome.refund_amount == 3000
        assert outcome.payment_status is PaymentStatus.REFUNDED
        assert await services.ledger.refundable_balance(intent.id) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_captured_inside_twelve_hours_moves_nothing(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await self._captured(authorize_booking, services)

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.PASSENGER, departs_in(6), now=NOW
        )

        assert outcome.outcome == NO_REFUND
        assert outcome.refund_amount == 0
        assert gateway.refunds == []
        assert (await services.ledger.get(intent.id)).status is PaymentStatus.CAPTURED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_limited_to_remaining_balance(
        self, authorize_booking: Any, services: Any
    ) -> None:
        intent = await self._captured(authorize_booking, services)
        await services.ledger.refund(intent.id, 2000)

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.DRIVER, departs_in(1), now=NOW
        )

        assert outcome.refund_amount == 1000
        assert outcome.payment_status is PaymentStatus.REFUNDED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeat_refund_cancel_refunds_once(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await self._captured(authorize_booking, services)

        for _ in range(2):
            outcome = await services.cancellations.cancel_booking(
                intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
            )
            assert outcome.outcome == REFUNDED
            assert outcome.refund_amount == 1500

        assert gateway.refunds == [(intent.external_ref, 1500)]
        assert (await services.ledger.get(intent.id)).amount_refunded == 1500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lost_refund_response_resumed_not_repeated(
        self, authorize_booking: Any, services: Any, gateway: Any
    ) -> None:
        intent = await self._captured(authorize_booking, services)
        gateway.lose_next_response("refund")

        with pytest.raises(ProviderTransientError):
            await services.cancellations.cancel_booking(
                intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
            )
        [pending] = await services.ledger.list_refunds(intent.id)
        assert pending.status is RefundStatus.PENDING

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id, ActorRole.PASSENGER, departs_in(18), now=NOW
        )

        assert outcome.outcome == REFUNDED
        assert outcome.refund_amount == 1500
        # The retry replays the first refund's idempotency key
        assert gateway.refunds == [(intent.external_ref, 1500)]
        [settled] = await services.ledger.list_refunds(intent.id)
        assert settled.id == pending.id
        assert settled.status is RefundStatus.SUCCEEDED


class TestCancelRide:
    """Whole-ride cancellations and their audit trail."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_ride_settles_every_open_booking(
        self, authorize_booking: Any, services: Any
    ) -> None:
        ride_id = uuid.uuid4()
        first = await authorize_booking(ride_id=ride_id, subtotal=2000)
        second = await authorize_booking(ride_id=ride_id, subtotal=2500)
        voided = await authorize_booking(ride_id=ride_id)
        await services.ledger.cancel(voided.id)

        outcomes = await services.cancellations.cancel_ride(
            ride_id, ActorRole.DRIVER, departs_in(5), now=NOW
        )

        assert {o.booking_id for o in outcomes} == {first.booking_id, second.booking_id}
        assert all(o.outcome == VOIDED for o in outcomes)
        assert sum(o.refund_amount for o in outcomes) == 4500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancellation_is_recorded_with_notification(
        self, authorize_booking: Any, services: Any, session_factory: Any
    ) -> None:
        intent = await authorize_booking(subtotal=3000)
        rider = uuid.uuid4()

        outcome = await services.cancellations.cancel_booking(
            intent.booking_id,
            ActorRole.PASSENGER,
            departs_in(18),
            now=NOW,
            reason="plans changed",
            cancelled_by=rider,
        )

        async with session_factory() as db:
            cancellation = await db.get(RideCancellation, outcome.cancellation_id)
            events = (
                await db.execute(
                    select(OutboxEvent).where(OutboxEvent.event_type == "cancellation_processed")
                )
            ).scalars().all()

        assert cancellation.actor_role is ActorRole.PASSENGER
        assert cancellation.refund_percentage == 50
        assert cancellation.fee_amount == 1500
        assert cancellation.cancelled_by == rider
        assert cancellation.reason == "plans changed"

        assert len(events) == 1
        assert events[0].payload["booking_id"] == str(intent.booking_id)
        assert events[0].payload["outcome"] == FEE_CAPTURED
