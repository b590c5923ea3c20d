"""
Poll-driven capture worker.

Each tick:
1. Recover items whose processing lease expired
2. Fetch due pending items, oldest first, up to the batch size
3. For each: claim (compare-and-swap), re-check provider truth, capture
4. Publish queue depth and tick duration

Items in one tick are handled sequentially with a short pause between
provider calls. Transient failures go back to the queue with exponential
backoff; terminal failures and exhausted retries are dead-lettered as
Failed for operator review.
"""
import asyncio
import os
import socket
import time
from datetime import datetime
from typing import Dict, Optional

import structlog

from ride_payments.config import Settings, get_settings
from ride_payments.core.capture_queue import CaptureQueue
from ride_payments.core.errors import PaymentError
from ride_payments.core.ledger import PaymentLedger
from ride_payments.core.reconciliation import LeaseReconciler
from ride_payments.database.models import CaptureQueueItem
from ride_payments.integrations.provider import ProviderTerminalError, ProviderTransientError
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class CaptureWorker:
    """Consumes the capture queue and drives each item to a terminal state."""

    def __init__(
        self,
        ledger: PaymentLedger,
        queue: CaptureQueue,
        settings: Optional[Settings] = None,
        worker_id: Optional[str] = None,
        reconciler: Optional[LeaseReconciler] = None,
    ) -> None:
        self.ledger = ledger
        self.queue = queue
        self.settings = settings or get_settings()
        self.worker_id = worker_id or default_worker_id()
        self.reconciler = reconciler or LeaseReconciler(
            ledger, queue, self.settings, worker_id=f"{self.worker_id}:reconciler"
        )
        self._running = False
        self._stop_event = asyncio.Event()

        logger.info(
            "capture_worker_initialized",
            worker_id=self.worker_id,
            batch_size=self.settings.capture_batch_size,
            poll_interval=self.settings.capture_poll_interval_seconds,
        )

    def backoff_seconds(self, attempts: int) -> float:
        """Delay before the next attempt: base × 2^attempts, capped."""
        return min(
            self.settings.capture_backoff_base_seconds * (2 ** attempts),
            self.settings.capture_backoff_max_seconds,
        )

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run one worker tick.

        Returns:
            Dict[str, int]: Counts of recovered/processed/succeeded/retried/
            failed/skipped/errors for the tick
        """
        start_time = time.time()
        summary = {
            "recovered": 0,
            "processed": 0,
            "succeeded": 0,
            "retried": 0,
            "failed": 0,
            "skipped": 0,
            "errors": 0,
        }

        summary["recovered"] = await self.reconciler.recover_expired_leases(now)
        items = await self.queue.fetch_due(self.settings.capture_batch_size, now)

        for index, item in enumerate(items):
            if index and self.settings.capture_inter_item_delay_seconds:
                await asyncio.sleep(self.settings.capture_inter_item_delay_seconds)
            try:
                outcome = await self._process_item(item, now)
            except Exception as e:
                # Item stays processing; lease recovery picks it up later
                logger.exception(
                    "capture_item_error",
                    queue_item_id=str(item.id),
                    payment_intent_id=str(item.payment_intent_id),
                    error=str(e),
                )
                summary["errors"] += 1
                continue

            summary[outcome] += 1
            if outcome != "skipped":
                summary["processed"] += 1

        await self.queue.depth()
        duration = time.time() - start_time
        metrics.record_capture_tick(duration)
        logger.info(
            "capture_tick_completed",
            worker_id=self.worker_id,
            due=len(items),
            duration_seconds=round(duration, 3),
            **summary,
        )
        return summary

    async def _process_item(self, item: CaptureQueueItem, now: Optional[datetime] = None) -> str:
        if not await self.queue.claim(item.id, self.worker_id, now):
            metrics.record_capture_attempt("skipped")
            return "skipped"
        # The fetched snapshot may predate another tick's attempt
        item = await self.queue.get(item.id)

        log = logger.bind(
            queue_item_id=str(item.id),
            payment_intent_id=str(item.payment_intent_id),
            attempt=item.attempts + 1,
            max_attempts=item.max_attempts,
        )
        log.info("capture_attempt_started", amount_cents=item.amount_cents)

        try:
            intent = await self.ledger.begin_capture(item.payment_intent_id)
            snapshot = await self.ledger.gateway.retrieve(intent.external_ref)

            if snapshot.provider_status.captured:
                log.info("capture_already_taken_at_provider")
                await self.ledger.reconcile_capture(intent.id, snapshot.amount_received)
            elif not snapshot.provider_status.capturable:
                # Retrying can never succeed, so no attempt is consumed
                error = (
                    f"Provider status {snapshot.provider_status.value} no longer supports capture"
                )
                await self.queue.fail(item.id, error, consume_attempt=False)
                await self._fail_intent(item, error)
                metrics.record_capture_attempt("failed")
                return "failed"
            else:
                await self.ledger.capture(intent.id, item.amount_cents)
        except ProviderTransientError as e:
            log.warning("capture_attempt_transient_error", error=str(e))
            return await self._handle_transient(item, str(e))
        except ProviderTerminalError as e:
            await self.queue.fail(item.id, str(e))
            await self._fail_intent(item, str(e))
            metrics.record_capture_attempt("failed")
            return "failed"
        except PaymentError as e:
            await self.queue.fail(item.id, str(e))
            metrics.record_capture_attempt("failed")
            return "failed"

        await self.queue.complete(item.id)
        metrics.record_capture_attempt("succeeded")
        log.info("capture_attempt_succeeded")
        return "succeeded"

    async def _handle_transient(self, item: CaptureQueueItem, error: str) -> str:
        attempts = item.attempts + 1
        if attempts >= item.max_attempts:
            await self.queue.fail(item.id, error)
            await self._fail_intent(item, error)
            metrics.record_capture_attempt("failed")
            logger.error(
                "capture_retries_exhausted",
                queue_item_id=str(item.id),
                payment_intent_id=str(item.payment_intent_id),
                attempts=attempts,
                error=error,
            )
            return "failed"

        delay = self.backoff_seconds(attempts)
        await self.ledger.requeue(item.payment_intent_id, error)
        await self.queue.release_for_retry(item.id, error, delay)
        metrics.record_capture_attempt("retried")
        return "retried"

    async def _fail_intent(self, item: CaptureQueueItem, error: str) -> None:
        try:
            await self.ledger.fail(item.payment_intent_id, error)
        except PaymentError as e:
            logger.error(
                "capture_ledger_fail_rejected",
                payment_intent_id=str(item.payment_intent_id),
                error=str(e),
            )

    async def start(self) -> None:
        """Tick every ``capture_poll_interval_seconds`` until ``stop()`` is called."""
        self._running = True
        self._stop_event.clear()
        logger.info("capture_worker_started", worker_id=self.worker_id)

        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error("capture_worker_error", error=str(e))

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.settings.capture_poll_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("capture_worker_stopped", worker_id=self.worker_id)

    def stop(self) -> None:
        """Stop after the current tick."""
        self._running = False
        self._stop_event.set()
        logger.info("capture_worker_stop_requested", worker_id=self.worker_id)
