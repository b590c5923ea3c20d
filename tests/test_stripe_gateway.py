"""
Unit tests for the Stripe gateway's error mapping and circuit breaker.

The Stripe SDK is patched out, so nothing here reaches the network.
"""
from typing import Any
from unittest.mock import MagicMock

import pytest
import stripe

from ride_payments.integrations.provider import (
    ProviderErrorType,
    ProviderIntentStatus,
    ProviderTerminalError,
    ProviderTransientError,
)
from ride_payments.integrations.stripe_gateway import (
    UNEXPECTED_STATE,
    CircuitBreaker,
    StripeGateway,
)


def stripe_intent(**fields: Any) -> MagicMock:
    intent = MagicMock()
    intent.id = fields.get("id", "pi_test_123")
    intent.status = fields.get("status", "requires_capture")
    intent.amount = fields.get("amount", 3000)
    intent.amount_received = fields.get("amount_received", 0)
    intent.amount_capturable = fields.get("amount_capturable", 0)
    return intent


@pytest.fixture
def stripe_gateway(test_settings: Any) -> StripeGateway:
    return StripeGateway(settings=test_settings)


class TestErrorClassification:
    """Stripe exceptions map onto transient and terminal provider errors."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error, expected",
        [
            (stripe.RateLimitError("Too many requests"), ProviderErrorType.RATE_LIMIT),
            (stripe.APIConnectionError("Connection reset"), ProviderErrorType.TRANSIENT),
            (stripe.APIError("Internal error"), ProviderErrorType.TRANSIENT),
            (stripe.CardError("Card declined", None, "card_declined"), ProviderErrorType.TERMINAL),
            (stripe.InvalidRequestError("No such intent", "id"), ProviderErrorType.TERMINAL),
            (stripe.AuthenticationError("Bad key"), ProviderErrorType.TERMINAL),
            (ValueError("Something odd"), ProviderErrorType.TRANSIENT),
        ],
    )
    def test_classify_error(self, error: Exception, expected: ProviderErrorType) -> None:
        assert StripeGateway.classify_error(error) is expected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_error_becomes_terminal(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.PaymentIntent.capture",
            side_effect=stripe.CardError("Card declined", None, "card_declined"),
        )

        with pytest.raises(ProviderTerminalError) as exc_info:
            await stripe_gateway.capture("pi_test_123", 3000, idempotency_key="key-1")

        assert exc_info.value.code == "card_declined"
        assert not exc_info.value.retryable

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_error_becomes_transient(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.Refund.create",
            side_effect=stripe.APIConnectionError("Connection reset"),
        )

        with pytest.raises(ProviderTransientError):
            await stripe_gateway.refund("pi_test_123", 500, idempotency_key="key-2")

        assert stripe_gateway.circuit_breaker.failure_count == 1


class TestStripeCalls:
    """Request shaping and response mapping."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authorize_requests_manual_capture(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        create = mocker.patch("stripe.PaymentIntent.create", return_value=stripe_intent())

        result = await stripe_gateway.authorize(
            2700,
            "pm_card_visa",
            currency="USD",
            idempotency_key="ride-payments:authorize:abc",
            metadata={"booking_id": "b-1"},
        )

        assert result.external_ref == "pi_test_123"
        assert result.provider_status is ProviderIntentStatus.REQUIRES_CAPTURE
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 2700
        assert kwargs["currency"] == "usd"
        assert kwargs["capture_method"] == "manual"
        assert kwargs["payment_method"] == "pm_card_visa"
        assert kwargs["confirm"] is True
        assert kwargs["idempotency_key"] == "ride-payments:authorize:abc"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_capture_passes_amount(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        capture = mocker.patch(
            "stripe.PaymentIntent.capture",
            return_value=stripe_intent(status="succeeded", amount_received=1500),
        )

        result = await stripe_gateway.capture("pi_test_123", 1500, idempotency_key="key-3")

        assert result.captured_amount == 1500
        assert not result.already_captured
        assert capture.call_args.kwargs["amount_to_capture"] == 1500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_of_captured_intent_is_success(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.PaymentIntent.capture",
            side_effect=stripe.InvalidRequestError(
                "This PaymentIntent could not be captured", None, code=UNEXPECTED_STATE
            ),
        )
        mocker.patch(
            "stripe.PaymentIntent.retrieve",
            return_value=stripe_intent(status="succeeded", amount_received=3000),
        )

        result = await stripe_gateway.capture("pi_test_123", 3000, idempotency_key="key-4")

        assert result.already_captured
        assert result.captured_amount == 3000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_reason_outside_stripe_vocabulary_goes_to_metadata(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        refund = MagicMock(id="re_test_1", status="succeeded")
        create = mocker.patch("stripe.Refund.create", return_value=refund)

        result = await stripe_gateway.refund(
            "pi_test_123", 1000, idempotency_key="key-5", reason="cancellation"
        )

        assert result.refund_ref == "re_test_1"
        assert "reason" not in create.call_args.kwargs
        assert create.call_args.kwargs["metadata"] == {"reason": "cancellation"}


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=3, timeout=60)
        for _ in range(3):
            breaker.on_failure()

        assert breaker.state == "open"
        with pytest.raises(ProviderTransientError, match="Circuit breaker is open"):
            breaker.before_call()

    @pytest.mark.unit
    def test_half_open_then_closed(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)
        breaker.on_failure()
        breaker.last_failure_time -= 1

        breaker.before_call()
        assert breaker.state == "half_open"

        breaker.on_success()
        assert breaker.state == "half_open"
        breaker.on_success()
        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_circuit_skips_stripe(
        self, test_settings: Any, mocker: Any
    ) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=60)
        breaker.on_failure()
        gateway = StripeGateway(settings=test_settings, circuit_breaker=breaker)
        cancel = mocker.patch("stripe.PaymentIntent.cancel")

        with pytest.raises(ProviderTransientError):
            await gateway.cancel("pi_test_123", idempotency_key="key-6")

        cancel.assert_not_called()
