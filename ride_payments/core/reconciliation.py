"""
Lease recovery for capture items abandoned mid-flight.

A worker that crashes after claiming an item leaves it in processing. Once
the lease has expired the item is reconciled against the provider's own
record before anything else happens to it: a capture that landed is
finalized, anything else goes back to pending with one attempt consumed.
"""
from datetime import datetime, timedelta
from typing import Optional

import structlog

from ride_payments.config import Settings, get_settings
from ride_payments.core.capture_queue import CaptureQueue
from ride_payments.core.errors import PaymentError
from ride_payments.core.ledger import PaymentLedger
from ride_payments.database.models import CaptureQueueItem, PaymentStatus, utcnow
from ride_payments.integrations.provider import ProviderError

logger = structlog.get_logger(__name__)

LEASE_EXPIRED = "Capture lease expired before the attempt resolved"


class LeaseReconciler:
    """Recovers processing items whose worker lease has expired."""

    def __init__(
        self,
        ledger: PaymentLedger,
        queue: CaptureQueue,
        settings: Optional[Settings] = None,
        worker_id: str = "lease-reconciler",
    ) -> None:
        self.ledger = ledger
        self.queue = queue
        self.settings = settings or get_settings()
        self.worker_id = worker_id

    async def recover_expired_leases(self, now: Optional[datetime] = None) -> int:
        """
        Reconcile every processing item whose lease is older than the timeout.

        Returns:
            int: Number of items recovered
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.capture_lease_timeout_seconds)
        expired = await self.queue.list_expired_leases(cutoff)
        recovered = 0

        for item in expired:
            # Re-taking the lease keeps a second reconciler off the same item
            if not await self.queue.reclaim_expired(item.id, cutoff, self.worker_id):
                continue
            try:
                await self._recover(item)
            except ProviderError as e:
                # Lease was refreshed; the next pass tries again after it expires
                logger.warning(
                    "capture_lease_recovery_deferred",
                    queue_item_id=str(item.id),
                    error=str(e),
                )
                continue
            recovered += 1

        if expired:
            logger.info("capture_leases_recovered", expired=len(expired), recovered=recovered)
        return recovered

    async def _recover(self, item: CaptureQueueItem) -> None:
        intent = await self.ledger.get(item.payment_intent_id)
        snapshot = await self.ledger.gateway.retrieve(intent.external_ref)

        if snapshot.provider_status.captured:
            await self.ledger.reconcile_capture(intent.id, snapshot.amount_received)
            await self.queue.complete(item.id)
            logger.info(
                "capture_lease_recovered_as_captured",
                queue_item_id=str(item.id),
                payment_intent_id=str(intent.id),
            )
            return

        attempts = item.attempts + 1
        if attempts >= item.max_attempts or not snapshot.provider_status.capturable:
            error = f"{LEASE_EXPIRED} (provider status {snapshot.provider_status.value})"
            await self.queue.fail(item.id, error)
            try:
                await self.ledger.fail(intent.id, error)
            except PaymentError as e:
                logger.error(
                    "capture_lease_ledger_fail_rejected",
                    payment_intent_id=str(intent.id),
                    error=str(e),
                )
            return

        if intent.status is PaymentStatus.CAPTURE_QUEUED:
            await self.ledger.requeue(intent.id, LEASE_EXPIRED)
        await self.queue.release_for_retry(item.id, LEASE_EXPIRED, delay_seconds=0)
        logger.info(
            "capture_lease_released",
            queue_item_id=str(item.id),
            payment_intent_id=str(intent.id),
            attempts=attempts,
        )
