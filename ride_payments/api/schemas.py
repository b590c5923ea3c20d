"""
Pydantic schemas for API request/response models.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ride_payments.database.models import (
    ActorRole,
    CaptureItemStatus,
    EarningsStatus,
    PaymentStatus,
    RefundStatus,
)


class AuthorizePaymentRequest(BaseModel):
    """Request schema for authorizing a booking's payment."""

    ride_id: uuid.UUID
    booking_id: uuid.UUID
    rider_id: uuid.UUID
    driver_id: uuid.UUID
    amount_subtotal: int = Field(..., gt=0, description="Fare before discounts, in cents")
    discount_amount: Optional[int] = Field(
        default=None,
        ge=0,
        description="Explicit discount in cents; omit to apply the rider's referral grant",
    )
    customer_ref: Optional[str] = Field(
        default=None, description="Provider payment method reference (e.g. pm_...)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "ride_id": "6f1c7c2e-2d55-4c5e-9d43-8f6f1a1e2b01",
                    "booking_id": "0b9f6f3a-8e2a-4a57-a0a3-4a3c0b1f2e11",
                    "rider_id": "8a1d2c3b-4e5f-4a6b-9c8d-7e6f5a4b3c21",
                    "driver_id": "1c2b3a4d-5e6f-4b7a-8c9d-0e1f2a3b4c31",
                    "amount_subtotal": 3000,
                    "customer_ref": "pm_card_visa",
                }
            ]
        }
    }


class PaymentIntentResponse(BaseModel):
    """Response schema for a payment intent."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    external_ref: Optional[str] = None
    ride_id: uuid.UUID
    booking_id: uuid.UUID
    rider_id: uuid.UUID
    driver_id: uuid.UUID
    amount_subtotal: int
    discount_amount: int
    amount_total: int
    amount_captured: int
    amount_refunded: int
    currency: str
    capture_method: str
    status: PaymentStatus
    referral_grant_id: Optional[uuid.UUID] = None
    last_error: Optional[str] = None
    created_at: datetime
    authorized_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class CancelPaymentRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class RefundRequest(BaseModel):
    """Request schema for refunding captured funds."""

    amount_cents: int = Field(..., gt=0, description="Refund amount in cents")
    reason: Optional[str] = Field(default=None, max_length=255)


class RefundResponse(BaseModel):
    """Response schema for a refund."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    payment_intent_id: uuid.UUID
    amount: int
    reason: Optional[str] = None
    status: RefundStatus
    provider_refund_ref: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class RideCompletedRequest(BaseModel):
    """Ride-completed event from the ride lifecycle service."""

    booking_ids: List[uuid.UUID] = Field(..., min_length=1)


class CaptureQueueItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    payment_intent_id: uuid.UUID
    amount_cents: int
    attempts: int
    max_attempts: int
    status: CaptureItemStatus
    next_attempt_at: datetime
    last_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None
    source: Optional[str] = None
    created_at: datetime


class RideCompletedResponse(BaseModel):
    ride_id: uuid.UUID
    enqueued: List[CaptureQueueItemResponse]


class CancellationRequest(BaseModel):
    """
    Request schema for a cancellation.

    Give ``booking_id`` to cancel one seat, or ``ride_id`` alone to cancel
    every booking on the ride.
    """

    booking_id: Optional[uuid.UUID] = None
    ride_id: Optional[uuid.UUID] = None
    actor_role: ActorRole
    departure_time: datetime = Field(..., description="Scheduled departure (with timezone)")
    reason: Optional[str] = Field(default=None, max_length=1000)
    cancelled_by: Optional[uuid.UUID] = None

    @field_validator("departure_time")
    @classmethod
    def validate_departure_time(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("departure_time must include a timezone offset")
        return v

    @model_validator(mode="after")
    def require_target(self) -> "CancellationRequest":
        if self.booking_id is None and self.ride_id is None:
            raise ValueError("Either booking_id or ride_id is required")
        return self


class CancellationResponse(BaseModel):
    """Synchronous result of a cancellation."""

    cancellation_id: uuid.UUID
    booking_id: uuid.UUID
    payment_intent_id: uuid.UUID
    actor_role: ActorRole
    hours_before_departure: float
    refund_percentage: int
    fee_percentage: int
    outcome: str
    original_amount: int
    refund_amount: int
    fee_amount: int
    payment_status: PaymentStatus


class CaptureTickResponse(BaseModel):
    recovered: int
    processed: int
    succeeded: int
    retried: int
    failed: int
    skipped: int
    errors: int


class EarningsRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    driver_id: uuid.UUID
    ride_id: uuid.UUID
    booking_id: uuid.UUID
    payment_intent_id: uuid.UUID
    gross_amount: int
    platform_fee_percent: int
    platform_fee: int
    net_amount: int
    status: EarningsStatus
    payout_batch_id: Optional[str] = None
    created_at: datetime


class EarningsAdjustmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    earnings_record_id: uuid.UUID
    refund_id: uuid.UUID
    driver_id: uuid.UUID
    gross_delta: int
    platform_fee_delta: int
    net_delta: int
    status: EarningsStatus
    payout_batch_id: Optional[str] = None
    created_at: datetime


class PendingEarningsResponse(BaseModel):
    records: List[EarningsRecordResponse]
    adjustments: List[EarningsAdjustmentResponse]


class PayoutRequest(BaseModel):
    """Settle pending earnings into a payout batch."""

    payout_batch_id: str = Field(..., min_length=1, max_length=64)
    record_ids: List[uuid.UUID] = Field(default_factory=list)
    adjustment_ids: List[uuid.UUID] = Field(default_factory=list)


class PayoutResponse(BaseModel):
    payout_batch_id: str
    records: int
    adjustments: int


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(default_factory=dict, description="Individual check results")
