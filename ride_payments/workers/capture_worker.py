"""
Capture worker process.

Runs the capture worker loop against Stripe, or a single tick with
``--once`` for cron-style scheduling.
"""
import argparse
import asyncio
import signal
from typing import Any

import structlog

from ride_payments.api.dependencies import get_services
from ride_payments.database.connection import close_db, init_db
from ride_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_capture_worker(once: bool = False) -> None:
    """
    Start the capture worker.

    Runs until SIGINT/SIGTERM unless ``once`` is set.
    """
    setup_logging("capture_worker")
    await init_db()

    worker = get_services().worker
    structlog.contextvars.bind_contextvars(worker_id=worker.worker_id)
    logger.info("capture_worker_process_starting", worker_id=worker.worker_id, once=once)

    try:
        if once:
            summary = await worker.run_once()
            logger.info("capture_worker_single_tick_done", **summary)
            return

        def signal_handler(sig: int, frame: Any) -> None:
            logger.info("capture_worker_shutdown_signal_received", signal=sig)
            worker.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        await worker.start()
    except Exception as e:
        logger.error("capture_worker_process_error", error=str(e))
        raise
    finally:
        await close_db()
        logger.info("capture_worker_process_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Capture queued ride payments")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    args = parser.parse_args()
    asyncio.run(start_capture_worker(once=args.once))


if __name__ == "__main__":
    main()
