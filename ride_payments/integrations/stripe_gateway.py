"""
Stripe-backed ProviderGateway with error classification and a circuit breaker.

Implements:
- Manual-capture authorization holds
- Partial capture with the remainder released
- Idempotency keys on every mutating call
- Bounded per-call timeouts surfaced as transient (unknown outcome) errors
- Retried reads of provider truth for reconciliation
"""
import asyncio
import time
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ride_payments.config import Settings, get_settings
from ride_payments.integrations.provider import (
    AuthorizationResult,
    CancelResult,
    CaptureResult,
    ProviderError,
    ProviderErrorType,
    ProviderGateway,
    ProviderIntentSnapshot,
    ProviderIntentStatus,
    ProviderTerminalError,
    ProviderTransientError,
    RefundResult,
)
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

UNEXPECTED_STATE = "payment_intent_unexpected_state"
STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


class CircuitBreaker:
    """
    Circuit breaker for provider calls.

    Stops calling the provider for ``timeout`` seconds once
    ``failure_threshold`` consecutive transient failures were seen.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Raise if the circuit is open.

        Raises:
            ProviderTransientError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_half_open")
            else:
                raise ProviderTransientError("Circuit breaker is open")

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class StripeGateway(ProviderGateway):
    """
    ProviderGateway over the Stripe PaymentIntents API.

    Stripe's SDK is synchronous, so each call runs in a worker thread bounded
    by ``provider_timeout_seconds``. A timeout means the request may still
    land at Stripe; callers must re-query with ``retrieve`` before deciding.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        stripe.api_key = self.settings.stripe_secret_key
        stripe.api_version = self.settings.stripe_api_version
        # Retries are owned by the capture worker, not the SDK
        stripe.max_network_retries = 0
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_gateway_initialized",
            api_version=self.settings.stripe_api_version,
            test_mode=self.settings.is_test_mode,
            timeout_seconds=self.settings.provider_timeout_seconds,
        )

    @staticmethod
    def classify_error(error: Exception) -> ProviderErrorType:
        """
        Classify a Stripe exception for retry logic.

        Args:
            error: Stripe error

        Returns:
            ProviderErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return ProviderErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return ProviderErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return ProviderErrorType.TERMINAL
        else:
            # Unknown errors are treated as transient
            return ProviderErrorType.TRANSIENT

    def _to_provider_error(self, operation: str, error: Exception) -> ProviderError:
        error_type = self.classify_error(error)
        code = getattr(error, "code", None)
        metrics.record_provider_error(error_type.value)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=code,
            error_message=str(error),
        )

        if error_type is ProviderErrorType.TERMINAL:
            return ProviderTerminalError(str(error), original_error=error, code=code)
        return ProviderTransientError(
            str(error), original_error=error, error_type=error_type, code=code
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run one SDK call under the circuit breaker and the bounded timeout."""
        self.circuit_breaker.before_call()
        start_time = time.time()

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func),
                timeout=self.settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            self.circuit_breaker.on_failure()
            metrics.record_provider_call(operation, "timeout", time.time() - start_time)
            logger.warning(
                "stripe_call_timed_out",
                operation=operation,
                timeout_seconds=self.settings.provider_timeout_seconds,
            )
            raise ProviderTransientError(
                f"{operation} timed out after {self.settings.provider_timeout_seconds}s",
                original_error=e,
            ) from e
        except stripe.StripeError as e:
            provider_error = self._to_provider_error(operation, e)
            if provider_error.retryable:
                self.circuit_breaker.on_failure()
            metrics.record_provider_call(operation, "error", time.time() - start_time)
            raise provider_error from e

        self.circuit_breaker.on_success()
        metrics.record_provider_call(operation, "success", time.time() - start_time)
        return result

    async def authorize(
        self,
        amount_total: int,
        customer_ref: Optional[str],
        *,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationResult:
        logger.info(
            "creating_authorization_hold",
            amount_cents=amount_total,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            kwargs: Dict[str, Any] = {
                "amount": amount_total,
                "currency": currency.lower(),
                "capture_method": "manual",
                "metadata": {k: str(v) for k, v in (metadata or {}).items()},
                "idempotency_key": idempotency_key,
            }
            if customer_ref:
                kwargs["payment_method"] = customer_ref
                kwargs["confirm"] = True
                kwargs["automatic_payment_methods"] = {
                    "enabled": True,
                    "allow_redirects": "never",
                }
            return stripe.PaymentIntent.create(**kwargs)

        payment_intent = await self._call("authorize", _create)
        status = ProviderIntentStatus(payment_intent.status)

        logger.info(
            "authorization_hold_created",
            external_ref=payment_intent.id,
            status=status.value,
        )
        return AuthorizationResult(external_ref=payment_intent.id, provider_status=status)

    async def capture(
        self, external_ref: str, amount: int, *, idempotency_key: str
    ) -> CaptureResult:
        logger.info(
            "capturing_payment_intent",
            external_ref=external_ref,
            amount_cents=amount,
            idempotency_key=idempotency_key,
        )

        def _capture() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.capture(
                external_ref,
                amount_to_capture=amount,
                idempotency_key=idempotency_key,
            )

        try:
            payment_intent = await self._call("capture", _capture)
        except ProviderTerminalError as e:
            if e.code != UNEXPECTED_STATE:
                raise
            snapshot = await self.retrieve(external_ref)
            if not snapshot.provider_status.captured:
                raise
            logger.info(
                "payment_intent_already_captured",
                external_ref=external_ref,
                amount_received=snapshot.amount_received,
            )
            return CaptureResult(
                provider_status=snapshot.provider_status,
                captured_amount=snapshot.amount_received,
                already_captured=True,
            )

        return CaptureResult(
            provider_status=ProviderIntentStatus(payment_intent.status),
            captured_amount=payment_intent.amount_received,
        )

    async def cancel(self, external_ref: str, *, idempotency_key: str) -> CancelResult:
        logger.info("canceling_payment_intent", external_ref=external_ref)

        def _cancel() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.cancel(external_ref, idempotency_key=idempotency_key)

        try:
            payment_intent = await self._call("cancel", _cancel)
        except ProviderTerminalError as e:
            if e.code != UNEXPECTED_STATE:
                raise
            snapshot = await self.retrieve(external_ref)
            if snapshot.provider_status is not ProviderIntentStatus.CANCELED:
                raise
            return CancelResult(provider_status=snapshot.provider_status)

        return CancelResult(provider_status=ProviderIntentStatus(payment_intent.status))

    async def refund(
        self,
        external_ref: str,
        amount: int,
        *,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        logger.info(
            "creating_refund",
            external_ref=external_ref,
            amount_cents=amount,
        )

        def _create_refund() -> stripe.Refund:
            kwargs: Dict[str, Any] = {
                "payment_intent": external_ref,
                "amount": amount,
                "idempotency_key": idempotency_key,
            }
            if reason in STRIPE_REFUND_REASONS:
                kwargs["reason"] = reason
            elif reason:
                kwargs["metadata"] = {"reason": reason}
            return stripe.Refund.create(**kwargs)

        refund = await self._call("refund", _create_refund)

        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return RefundResult(refund_ref=refund.id, provider_status=refund.status)

    @retry(
        retry=retry_if_exception_type(ProviderTransientError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def retrieve(self, external_ref: str) -> ProviderIntentSnapshot:
        logger.info("retrieving_payment_intent", external_ref=external_ref)

        def _retrieve() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.retrieve(external_ref)

        payment_intent = await self._call("retrieve", _retrieve)
        return ProviderIntentSnapshot(
            external_ref=payment_intent.id,
            provider_status=ProviderIntentStatus(payment_intent.status),
            amount=payment_intent.amount,
            amount_received=payment_intent.amount_received or 0,
            amount_capturable=payment_intent.amount_capturable or 0,
        )

    async def ping(self) -> None:
        """Cheap authenticated call used by the health check."""
        await self._call("balance", stripe.Balance.retrieve)
