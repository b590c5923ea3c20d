"""
Cancellation policy engine.

Turns (actor role, departure time, now) into a refund/fee split:

- Driver cancels: rider gets 100% back, whenever it happens.
- Passenger cancels 24h or more before departure: 100%.
- Passenger cancels between 12h and 24h before departure: 50%.
- Passenger cancels less than 12h before departure, or after it: 0%.
"""
import uuid
from datetime import datetime
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ride_payments.core.errors import PaymentValidationError
from ride_payments.core.money import percent_of
from ride_payments.database.models import ActorRole

FULL_REFUND_HOURS = 24.0
HALF_REFUND_HOURS = 12.0


class CancellationDecision(BaseModel):
    """Value object describing how a cancellation splits the rider's money."""

    model_config = ConfigDict(frozen=True)

    ride_id: Optional[uuid.UUID] = None
    actor_role: ActorRole
    hours_before_departure: float
    refund_percentage: int = Field(..., description="0, 50 or 100")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def fee_percentage(self) -> int:
        return 100 - self.refund_percentage

    def split(self, base_amount: int) -> Tuple[int, int]:
        """
        Split ``base_amount`` cents into (refund, fee).

        The fee is rounded half-up and the refund takes the remainder, so the
        two always add back up to the base.
        """
        if base_amount < 0:
            raise PaymentValidationError("Base amount must not be negative")
        fee = percent_of(base_amount, self.fee_percentage)
        return base_amount - fee, fee


class CancellationPolicyEngine:
    """Pure mapping from who cancelled and when to a refund percentage."""

    @staticmethod
    def hours_before(departure_time: datetime, now: datetime) -> float:
        if departure_time.tzinfo is None or now.tzinfo is None:
            raise PaymentValidationError("Departure and current time must be timezone-aware")
        return (departure_time - now).total_seconds() / 3600.0

    @classmethod
    def refund_percentage_for(cls, actor_role: ActorRole, hours_before: float) -> int:
        if actor_role is ActorRole.DRIVER:
            return 100
        if hours_before >= FULL_REFUND_HOURS:
            return 100
        if hours_before >= HALF_REFUND_HOURS:
            return 50
        return 0

    @classmethod
    def decide(
        cls,
        actor_role: ActorRole,
        departure_time: datetime,
        now: datetime,
        ride_id: Optional[uuid.UUID] = None,
    ) -> CancellationDecision:
        """
        Decide the refund/fee split for a cancellation.

        Args:
            actor_role: Who is cancelling
            departure_time: Scheduled departure (timezone-aware)
            now: Time of the cancellation request (timezone-aware)
            ride_id: Optional ride the decision is for

        Returns:
            CancellationDecision: Refund and fee percentages
        """
        actor_role = ActorRole(actor_role)
        hours = cls.hours_before(departure_time, now)
        return CancellationDecision(
            ride_id=ride_id,
            actor_role=actor_role,
            hours_before_departure=round(hours, 4),
            refund_percentage=cls.refund_percentage_for(actor_role, hours),
        )
