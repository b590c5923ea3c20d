"""Background workers for async processing."""
from .capture_worker import start_capture_worker
from .outbox_publisher import start_outbox_publisher

__all__ = ["start_capture_worker", "start_outbox_publisher"]
