"""Core payment lifecycle logic."""
from .cancellation import CancellationOutcome, CancellationService
from .capture_queue import CaptureQueue
from .capture_worker import CaptureWorker
from .earnings import EarningsPoster
from .errors import (
    ConsistencyConflict,
    IntentNotFound,
    PaymentError,
    PaymentValidationError,
    PolicyViolation,
)
from .ledger import PaymentLedger
from .outbox import OutboxPublisher
from .policy import CancellationDecision, CancellationPolicyEngine
from .reconciliation import LeaseReconciler
from .referrals import ReferralDiscountResolver

__all__ = [
    "CancellationDecision",
    "CancellationOutcome",
    "CancellationPolicyEngine",
    "CancellationService",
    "CaptureQueue",
    "CaptureWorker",
    "ConsistencyConflict",
    "EarningsPoster",
    "IntentNotFound",
    "LeaseReconciler",
    "OutboxPublisher",
    "PaymentError",
    "PaymentLedger",
    "PaymentValidationError",
    "PolicyViolation",
    "ReferralDiscountResolver",
]
