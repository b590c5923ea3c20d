"""
Structured logging configuration.

Every process (API, capture worker, outbox publisher) logs JSON through
structlog. Events carry the app, environment and process component, plus any
contextvars bound by the caller (``request_id`` in the API, ``worker_id`` in
the capture worker). Provider secrets and payment method references never
reach the log stream.
"""
import logging
import sys
from typing import Any, Dict, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from ride_payments.config import get_settings

REDACTED = "[redacted]"

# Keys whose values identify a card or authenticate against the provider
SENSITIVE_KEYS = frozenset(
    {
        "customer_ref",
        "payment_method",
        "stripe_secret_key",
        "api_key",
        "authorization",
        "x-api-key",
        "client_secret",
    }
)


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask secrets and payment method references, including one level of nesting."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS and value is not None:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if k.lower() in SENSITIVE_KEYS and v is not None else v
                for k, v in value.items()
            }
    return event_dict


class AppContext:
    """Processor stamping app, environment and component on every event."""

    def __init__(self, component: str) -> None:
        settings = get_settings()
        self.context: Dict[str, str] = {
            "app_name": settings.app_name,
            "app_env": settings.app_env,
            "component": component,
        }

    def __call__(
        self, logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        for key, value in self.context.items():
            event_dict.setdefault(key, value)
        return event_dict


def setup_logging(component: str = "api") -> None:
    """
    Configure structlog and the stdlib root logger for one process.

    Args:
        component: Process role stamped on each event (``api``,
            ``capture_worker``, ``outbox_publisher``)
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            AppContext(component),
            redact_sensitive_fields,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # structlog already renders JSON; the formatter covers third-party stdlib loggers
    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        component=component,
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
