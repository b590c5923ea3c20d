"""Database package for ride payments."""
from .connection import (
    close_db,
    create_session_factory,
    get_engine,
    get_session_factory,
    init_db,
)
from .models import (
    ActorRole,
    Base,
    CaptureItemStatus,
    CaptureQueueItem,
    EarningsAdjustment,
    EarningsRecord,
    EarningsStatus,
    GrantRole,
    GrantStatus,
    OutboxEvent,
    PaymentEvent,
    PaymentIntent,
    PaymentRefund,
    PaymentStatus,
    ReferralDiscountGrant,
    RefundStatus,
    RideCancellation,
    utcnow,
)

__all__ = [
    "ActorRole",
    "Base",
    "CaptureItemStatus",
    "CaptureQueueItem",
    "EarningsAdjustment",
    "EarningsRecord",
    "EarningsStatus",
    "GrantRole",
    "GrantStatus",
    "OutboxEvent",
    "PaymentEvent",
    "PaymentIntent",
    "PaymentRefund",
    "PaymentStatus",
    "ReferralDiscountGrant",
    "RefundStatus",
    "RideCancellation",
    "close_db",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
    "utcnow",
]
