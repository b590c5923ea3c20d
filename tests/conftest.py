"""
Pytest configuration and fixtures.

Every test gets a throwaway SQLite database and a scripted in-memory
payment provider, so nothing here talks to Stripe or PostgreSQL.
"""
import json
import os
import uuid
from collections import defaultdict
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Tuple

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./ride_payments_test.db")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault(
    "SERVICE_API_KEYS",
    json.dumps(
        {
            "booking-key": "booking_service",
            "worker-key": "capture_worker",
            "payout-key": "payout_batcher",
            "operator-key": "operator",
        }
    ),
)

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ride_payments.api.dependencies import PaymentServices, get_services
from ride_payments.api.main import app
from ride_payments.config import Settings
from ride_payments.database.connection import create_session_factory, init_db
from ride_payments.database.models import PaymentIntent
from ride_payments.integrations.provider import (
    AuthorizationResult,
    CancelResult,
    CaptureResult,
    ProviderGateway,
    ProviderIntentSnapshot,
    ProviderIntentStatus,
    ProviderTerminalError,
    ProviderTransientError,
    RefundResult,
)

# api.main configures JSON logging at import; capture_logs needs uncached loggers
structlog.configure(cache_logger_on_first_use=False)


class FakeProviderGateway(ProviderGateway):
    """
    In-memory provider with Stripe-like manual-capture semantics.

    Failures are scripted per operation with ``fail_next``; ``lose_next_response``
    applies the operation and then raises a transient error, like a timeout
    after the provider already moved the money.
    """

    def __init__(self) -> None:
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.captures: List[Tuple[str, int]] = []
        self.refunds: List[Tuple[str, int]] = []
        self.authorize_status = ProviderIntentStatus.REQUIRES_CAPTURE
        self.refund_status = "succeeded"
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self._lost_responses: Dict[str, int] = defaultdict(int)
        self._idempotent: Dict[str, Any] = {}

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        self._failures[operation].extend([error] * times)

    def lose_next_response(self, operation: str) -> None:
        self._lost_responses[operation] += 1

    def settle_capture(self, external_ref: str, amount: int) -> None:
        """Capture out of band, as if a crashed worker's call had landed."""
        state = self.intents[external_ref]
        state["status"] = ProviderIntentStatus.SUCCEEDED
        state["amount_received"] = amount
        self.captures.append((external_ref, amount))

    def _maybe_fail(self, operation: str) -> None:
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    def _maybe_lose(self, operation: str) -> None:
        if self._lost_responses[operation]:
            self._lost_responses[operation] -= 1
            raise ProviderTransientError(f"{operation} timed out")

    async def authorize(
        self,
        amount_total: int,
        customer_ref: Optional[str],
        *,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationResult:
        self.calls.append(("authorize", idempotency_key))
        self._maybe_fail("authorize")
        if idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]

        external_ref = f"pi_fake_{len(self.intents) + 1}"
        self.intents[external_ref] = {
            "status": self.authorize_status,
            "amount": amount_total,
            "amount_received": 0,
            "refunded": 0,
        }
        result = AuthorizationResult(external_ref=external_ref, provider_status=self.authorize_status)
        self._idempotent[idempotency_key] = result
        self._maybe_lose("authorize")
        return result

    async def capture(self, external_ref: str, amount: int, *, idempotency_key: str) -> CaptureResult:
        self.calls.append(("capture", idempotency_key))
        self._maybe_fail("capture")
        state = self.intents[external_ref]
        if state["status"] is ProviderIntentStatus.SUCCEEDED:
            return CaptureResult(
                provider_status=ProviderIntentStatus.SUCCEEDED,
                captured_amount=state["amount_received"],
                already_captured=True,
            )
        if state["status"] is not ProviderIntentStatus.REQUIRES_CAPTURE:
            raise ProviderTerminalError(
                f"Intent is {state['status'].value}", code="payment_intent_unexpected_state"
            )

        state["status"] = ProviderIntentStatus.SUCCEEDED
        state["amount_received"] = amount
        self.captures.append((external_ref, amount))
        self._maybe_lose("capture")
        return CaptureResult(provider_status=ProviderIntentStatus.SUCCEEDED, captured_amount=amount)

    async def cancel(self, external_ref: str, *, idempotency_key: str) -> CancelResult:
        self.calls.append(("cancel", idempotency_key))
        self._maybe_fail("cancel")
        state = self.intents[external_ref]
        if state["status"] is ProviderIntentStatus.SUCCEEDED:
            raise ProviderTerminalError("Captured intents cannot be canceled")
        state["status"] = ProviderIntentStatus.CANCELED
        self._maybe_lose("cancel")
        return CancelResult(provider_status=ProviderIntentStatus.CANCELED)

    async def refund(
        self,
        external_ref: str,
        amount: int,
        *,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        self.calls.append(("refund", idempotency_key))
        self._maybe_fail("refund")
        if idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]

        state = self.intents[external_ref]
        if state["refunded"] + amount > state["amount_received"]:
            raise ProviderTerminalError("Refund exceeds captured amount", code="amount_too_large")
        state["refunded"] += amount
        self.refunds.append((external_ref, amount))
        result = RefundResult(refund_ref=f"re_fake_{len(self.refunds)}", provider_status=self.refund_status)
        self._idempotent[idempotency_key] = result
        self._maybe_lose("refund")
        return result

    async def retrieve(self, external_ref: str) -> ProviderIntentSnapshot:
        self.calls.append(("retrieve", None))
        self._maybe_fail("retrieve")
        state = self.intents[external_ref]
        capturable = state["status"] is ProviderIntentStatus.REQUIRES_CAPTURE
        return ProviderIntentSnapshot(
            external_ref=external_ref,
            provider_status=state["status"],
            amount=state["amount"],
            amount_received=state["amount_received"],
            amount_capturable=state["amount"] if capturable else 0,
        )

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with retries that never wait."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url="sqlite+aiosqlite:///./ride_payments_test.db",
        app_name="ride-payments-test",
        app_env="test",
        log_level="DEBUG",
        capture_max_attempts=5,
        capture_backoff_base_seconds=0,
        capture_inter_item_delay_seconds=0,
        capture_lease_timeout_seconds=900,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh SQLite database per test."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        poolclass=NullPool,
    )
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def gateway() -> FakeProviderGateway:
    return FakeProviderGateway()


@pytest.fixture
def services(
    gateway: FakeProviderGateway,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> PaymentServices:
    return PaymentServices.build(
        gateway,
        session_factory=session_factory,
        settings=test_settings,
        worker_id="test-worker",
    )


AuthorizeFn = Callable[..., Awaitable[PaymentIntent]]


@pytest.fixture
def authorize_booking(services: PaymentServices) -> AuthorizeFn:
    """Authorize a booking with sensible defaults; keyword overrides win."""

    async def _authorize(**overrides: Any) -> PaymentIntent:
        data: Dict[str, Any] = {
            "ride_id": uuid.uuid4(),
            "booking_id": uuid.uuid4(),
            "rider_id": uuid.uuid4(),
            "driver_id": uuid.uuid4(),
            "subtotal": 3000,
            "customer_ref": "pm_card_visa",
        }
        data.update(overrides)
        return await services.ledger.authorize(**data)

    return _authorize


@pytest_asyncio.fixture
async def client(services: PaymentServices) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client wired to the in-memory provider."""
    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
