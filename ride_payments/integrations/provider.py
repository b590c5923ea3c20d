"""
Payment provider boundary.

The ledger only talks to the provider through ``ProviderGateway``. Every
mutating call carries an idempotency key so a retried call can never move
money twice, and every failure is classified as transient (retry, but the
outcome is unknown until the provider is re-queried) or terminal (decline or
invalid request, never retried).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    TERMINAL = "terminal"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class ProviderError(Exception):
    """Base exception for provider-related errors."""

    def __init__(
        self,
        message: str,
        error_type: ProviderErrorType,
        original_error: Optional[Exception] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error
        self.code = code

    @property
    def retryable(self) -> bool:
        return self.error_type is not ProviderErrorType.TERMINAL


class ProviderTransientError(ProviderError):
    """Timeout, connection failure, 5xx or rate limit. Outcome unknown."""

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        error_type: ProviderErrorType = ProviderErrorType.TRANSIENT,
        code: Optional[str] = None,
    ):
        super().__init__(message, error_type, original_error, code)


class ProviderTerminalError(ProviderError):
    """Explicit decline or invalid request."""

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, ProviderErrorType.TERMINAL, original_error, code)


class ProviderIntentStatus(str, Enum):
    """Provider-side status of a payment intent (Stripe vocabulary)."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    CANCELED = "canceled"
    SUCCEEDED = "succeeded"

    @property
    def capturable(self) -> bool:
        return self is ProviderIntentStatus.REQUIRES_CAPTURE

    @property
    def captured(self) -> bool:
        return self is ProviderIntentStatus.SUCCEEDED


@dataclass(frozen=True)
class AuthorizationResult:
    external_ref: str
    provider_status: ProviderIntentStatus


@dataclass(frozen=True)
class CaptureResult:
    provider_status: ProviderIntentStatus
    captured_amount: int
    already_captured: bool = False


@dataclass(frozen=True)
class CancelResult:
    provider_status: ProviderIntentStatus


@dataclass(frozen=True)
class RefundResult:
    refund_ref: str
    provider_status: str


@dataclass(frozen=True)
class ProviderIntentSnapshot:
    """Provider-side truth for one intent, used to reconcile ambiguous outcomes."""

    external_ref: str
    provider_status: ProviderIntentStatus
    amount: int
    amount_received: int
    amount_capturable: int


class ProviderGateway(ABC):
    """Abstraction over the external provider's authorize/capture/cancel/refund calls."""

    @abstractmethod
    async def authorize(
        self,
        amount_total: int,
        customer_ref: Optional[str],
        *,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationResult:
        """Place a manual-capture hold for ``amount_total`` cents."""

    @abstractmethod
    async def capture(
        self, external_ref: str, amount: int, *, idempotency_key: str
    ) -> CaptureResult:
        """Capture ``amount`` cents of the hold; the remainder is released."""

    @abstractmethod
    async def cancel(self, external_ref: str, *, idempotency_key: str) -> CancelResult:
        """Void an uncaptured hold."""

    @abstractmethod
    async def refund(
        self,
        external_ref: str,
        amount: int,
        *,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Return ``amount`` cents of captured funds."""

    @abstractmethod
    async def retrieve(self, external_ref: str) -> ProviderIntentSnapshot:
        """Fetch the provider's authoritative state for an intent."""

    async def ping(self) -> None:
        """Reachability probe for health checks. Gateways without one are assumed up."""
        return None
