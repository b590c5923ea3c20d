"""
Tests for the log processors.
"""
import pytest

from ride_payments.monitoring.logging import REDACTED, AppContext, redact_sensitive_fields


class TestLogProcessors:
    """Processors configured by setup_logging."""

    @pytest.mark.unit
    def test_payment_method_and_secrets_are_redacted(self) -> None:
        event = redact_sensitive_fields(
            None,
            "info",
            {
                "event": "creating_authorization_hold",
                "customer_ref": "pm_card_visa",
                "amount_cents": 2700,
                "headers": {"X-API-Key": "booking-key", "X-Request-ID": "req-1"},
            },
        )

        assert event["customer_ref"] == REDACTED
        assert event["amount_cents"] == 2700
        assert event["headers"] == {"X-API-Key": REDACTED, "X-Request-ID": "req-1"}

    @pytest.mark.unit
    def test_missing_values_left_alone(self) -> None:
        event = redact_sensitive_fields(None, "info", {"event": "x", "customer_ref": None})
        assert event["customer_ref"] is None

    @pytest.mark.unit
    def test_app_context_does_not_override_bound_values(self) -> None:
        processor = AppContext("capture_worker")

        event = processor(None, "info", {"event": "tick", "component": "reconciler"})

        assert event["component"] == "reconciler"
        assert event["app_env"] == "test"
        assert "app_name" in event
