"""
Tests for the notification outbox.
"""
from typing import Any, Dict, List

import pytest

from ride_payments.core.outbox import PAYMENT_CAPTURED, PAYMENT_REFUNDED, OutboxPublisher


class TestOutboxPublisher:
    """At-least-once delivery of ledger notifications."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_and_refund_are_published_once(
        self, authorize_booking: Any, services: Any, session_factory: Any
    ) -> None:
        delivered: List[Dict[str, Any]] = []

        async def dispatcher(event: Dict[str, Any]) -> None:
            delivered.append(event)

        publisher = OutboxPublisher(dispatcher=dispatcher, session_factory=session_factory)

        intent = await authorize_booking(subtotal=3000)
        await services.queue.enqueue(intent.id)
        await services.worker.run_once()
        await services.ledger.refund(intent.id, 500)

        assert await publisher.process_batch() == 2
        assert [e["event_type"] for e in delivered] == [PAYMENT_CAPTURED, PAYMENT_REFUNDED]
        assert delivered[0]["payload"]["captured_amount"] == 3000
        assert delivered[0]["aggregate_id"] == str(intent.id)
        assert delivered[1]["payload"]["amount"] == 500

        assert await publisher.process_batch() == 0
        assert await publisher.get_pending_count() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_dispatch_is_retried_next_batch(
        self, authorize_booking: Any, services: Any, session_factory: Any
    ) -> None:
        attempts: List[str] = []

        async def flaky_dispatcher(event: Dict[str, Any]) -> None:
            attempts.append(event["event_type"])
            if len(attempts) == 1:
                raise ConnectionError("notification service unavailable")

        publisher = OutboxPublisher(dispatcher=flaky_dispatcher, session_factory=session_factory)

        intent = await authorize_booking()
        await services.queue.enqueue(intent.id)
        await services.worker.run_once()

        assert await publisher.process_batch() == 0
        assert await publisher.get_pending_count() == 1

        assert await publisher.process_batch() == 1
        assert await publisher.get_pending_count() == 0
        assert attempts == [PAYMENT_CAPTURED, PAYMENT_CAPTURED]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_capture_writes_no_notification(
        self, authorize_booking: Any, services: Any, session_factory: Any, gateway: Any
    ) -> None:
        from ride_payments.integrations.provider import ProviderTerminalError

        intent = await authorize_booking()
        await services.queue.enqueue(intent.id)
        gateway.fail_next("capture", ProviderTerminalError("Authorization expired"))
        await services.worker.run_once()

        publisher = OutboxPublisher(session_factory=session_factory)
        assert await publisher.get_pending_count() == 0
