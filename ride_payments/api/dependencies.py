"""Service wiring shared by the HTTP layer and the worker entrypoints."""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_payments.config import Settings, get_settings
from ride_payments.core.cancellation import CancellationService
from ride_payments.core.capture_queue import CaptureQueue
from ride_payments.core.capture_worker import CaptureWorker
from ride_payments.core.earnings import EarningsPoster
from ride_payments.core.ledger import PaymentLedger
from ride_payments.core.referrals import ReferralDiscountResolver
from ride_payments.integrations.provider import ProviderGateway
from ride_payments.integrations.stripe_gateway import StripeGateway
from ride_payments.monitoring.health import HealthCheck


@dataclass
class PaymentServices:
    """All collaborating components built over one gateway and session factory."""

    ledger: PaymentLedger
    queue: CaptureQueue
    worker: CaptureWorker
    cancellations: CancellationService
    earnings: EarningsPoster
    referrals: ReferralDiscountResolver
    health: HealthCheck

    @classmethod
    def build(
        cls,
        gateway: ProviderGateway,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        worker_id: Optional[str] = None,
    ) -> "PaymentServices":
        settings = settings or get_settings()
        earnings = EarningsPoster(session_factory, settings.platform_fee_percent)
        referrals = ReferralDiscountResolver(session_factory, settings.referral_discount_percent)
        ledger = PaymentLedger(
            gateway,
            session_factory=session_factory,
            earnings=earnings,
            referrals=referrals,
            settings=settings,
        )
        queue = CaptureQueue(ledger, session_factory, settings.capture_max_attempts)
        return cls(
            ledger=ledger,
            queue=queue,
            worker=CaptureWorker(ledger, queue, settings, worker_id=worker_id),
            cancellations=CancellationService(ledger, queue, session_factory=session_factory),
            earnings=earnings,
            referrals=referrals,
            health=HealthCheck(gateway, session_factory),
        )


@lru_cache()
def get_services() -> PaymentServices:
    """Process-wide services backed by Stripe."""
    return PaymentServices.build(StripeGateway())
