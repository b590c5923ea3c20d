"""SQLAlchemy database models for the ride payment lifecycle."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-increments INTEGER primary keys
AutoIncrementBigInt = BigInteger().with_variant(Integer(), "sqlite")
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[Enum]) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class PaymentStatus(str, Enum):
    """
    Payment intent lifecycle states.

    PENDING_AUTHORIZATION → AUTHORIZED → CAPTURE_QUEUED → CAPTURED → (PARTIALLY_)REFUNDED
            ↓                   ↓             ↓    ↑
          FAILED             CANCELED       FAILED  └─ back to AUTHORIZED on transient failure
    """

    PENDING_AUTHORIZATION = "pending_authorization"
    AUTHORIZED = "authorized"
    CAPTURE_QUEUED = "capture_queued"
    CAPTURED = "captured"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    FAILED = "failed"


class CaptureItemStatus(str, Enum):
    """Capture queue item states. COMPLETED and FAILED are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EarningsStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class GrantRole(str, Enum):
    REFERRED = "referred"
    REFERRER = "referrer"


class GrantStatus(str, Enum):
    UNAVAILABLE = "unavailable"
    PENDING = "pending"
    USED = "used"
    EXPIRED = "expired"


class ActorRole(str, Enum):
    DRIVER = "driver"
    PASSENGER = "passenger"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentIntent(Base):
    """
    Payment intent table.

    The authoritative ledger row for one rider's payment on one booking.
    Every write goes through the optimistic ``version`` check, which makes
    this row the single serialization point between the capture worker and
    the cancellation/refund paths.
    """

    __tablename__ = "payment_intents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_ref: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    ride_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    booking_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    rider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    driver_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    customer_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount_subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_total: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_captured: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="cad")
    capture_method: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus),
        nullable=False,
        default=PaymentStatus.PENDING_AUTHORIZATION,
        index=True,
    )
    referral_grant_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    authorized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount_subtotal > 0", name="positive_subtotal"),
        CheckConstraint("discount_amount >= 0", name="non_negative_discount"),
        CheckConstraint(
            "amount_total = amount_subtotal - discount_amount", name="total_matches_discount"
        ),
        CheckConstraint("amount_total >= 0", name="non_negative_total"),
        CheckConstraint("amount_captured <= amount_total", name="capture_within_total"),
        CheckConstraint("amount_refunded <= amount_captured", name="refund_within_capture"),
        Index("idx_payment_intents_ride_status", "ride_id", "status"),
    )

    @property
    def refundable_amount(self) -> int:
        """Captured funds not yet returned to the rider."""
        return self.amount_captured - self.amount_refunded

    def __repr__(self) -> str:
        return (
            f"<PaymentIntent(id={self.id}, booking_id={self.booking_id}, "
            f"amount_total={self.amount_total}, status={self.status.value})>"
        )


class CaptureQueueItem(Base):
    """
    Durable capture work item.

    ``status`` + ``locked_at`` form the claim/lease: a worker owns an item only
    after flipping it from pending to processing in a single conditional UPDATE.
    """

    __tablename__ = "capture_queue_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_intent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_intents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[CaptureItemStatus] = mapped_column(
        _enum_column(CaptureItemStatus), nullable=False, default=CaptureItemStatus.PENDING
    )
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    locked_by: Mapped[Optional[str]] = mapped_column(String(64))
    # Who asked for the capture: NULL for ride completion, "cancellation:<id>" for fees
    source: Mapped[Optional[str]] = mapped_column(String(64))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_capture_amount"),
        CheckConstraint("attempts <= max_attempts", name="attempts_within_max"),
        Index(
            "uq_capture_queue_active_intent",
            "payment_intent_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
        Index("idx_capture_queue_due", "status", "next_attempt_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CaptureQueueItem(id={self.id}, intent={self.payment_intent_id}, "
            f"status={self.status.value}, attempts={self.attempts}/{self.max_attempts})>"
        )


class PaymentRefund(Base):
    """One refund against a captured intent. Pending rows count against the balance."""

    __tablename__ = "payment_refunds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_intent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_intents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[RefundStatus] = mapped_column(
        _enum_column(RefundStatus), nullable=False, default=RefundStatus.PENDING
    )
    provider_refund_ref: Mapped[Optional[str]] = mapped_column(String(255))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (CheckConstraint("amount > 0", name="positive_refund"),)


class EarningsRecord(Base):
    """Driver earnings derived from exactly one successful capture per booking."""

    __tablename__ = "earnings_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    driver_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    ride_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    booking_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    payment_intent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_intents.id"), nullable=False
    )
    gross_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
    platform_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    net_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[EarningsStatus] = mapped_column(
        _enum_column(EarningsStatus), nullable=False, default=EarningsStatus.PENDING, index=True
    )
    payout_batch_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("net_amount = gross_amount - platform_fee", name="net_matches_fee"),
    )


class EarningsAdjustment(Base):
    """Reversal appended to an earnings record when its capture is refunded."""

    __tablename__ = "earnings_adjustments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    earnings_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("earnings_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    refund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_refunds.id"), nullable=False, unique=True
    )
    driver_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    gross_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    net_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[EarningsStatus] = mapped_column(
        _enum_column(EarningsStatus), nullable=False, default=EarningsStatus.PENDING, index=True
    )
    payout_batch_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class ReferralDiscountGrant(Base):
    """A single-use percentage discount owned by a referred user or their referrer."""

    __tablename__ = "referral_discount_grants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    referral_use_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    beneficiary_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    role: Mapped[GrantRole] = mapped_column(_enum_column(GrantRole), nullable=False)
    percent: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    status: Mapped[GrantStatus] = mapped_column(
        _enum_column(GrantStatus), nullable=False, default=GrantStatus.UNAVAILABLE
    )
    reserved_by_intent_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    referrer_grant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("referral_discount_grants.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("percent > 0 AND percent <= 100", name="valid_grant_percent"),
        Index("idx_grants_beneficiary_status", "beneficiary_id", "status"),
    )


class RideCancellation(Base):
    """
    Outcome of a booking's cancellation, with the policy decision that drove it.

    One row per booking. The row is inserted with outcome ``processing``
    before any money moves and ``claimed_at`` acts as its lease; repeated
    requests get the stored outcome back instead of a second settlement.
    """

    __tablename__ = "ride_cancellations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ride_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    booking_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    payment_intent_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    actor_role: Mapped[ActorRole] = mapped_column(_enum_column(ActorRole), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    departure_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    hours_before_departure: Mapped[float] = mapped_column(Float, nullable=False)
    refund_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    original_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refund_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "refund_percentage IN (0, 50, 100)", name="valid_refund_percentage"
        ),
    )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    One row per ledger transition. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(AutoIncrementBigInt, primary_key=True, autoincrement=True)
    payment_intent_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(32))
    to_status: Mapped[Optional[str]] = mapped_column(String(32))
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent(id={self.id}, intent={self.payment_intent_id}, "
            f"type={self.event_type})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Notification events are written in the same transaction as the ledger
    change that caused them, then published asynchronously.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(AutoIncrementBigInt, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_outbox_unpublished", "published", "created_at"),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
