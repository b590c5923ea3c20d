"""
Driver earnings posting.

One EarningsRecord per booking, created from the captured amount in the
same transaction as the capture. Refunds never rewrite a record: each one
appends an EarningsAdjustment that reverses its share, so records that were
already paid out stay untouched and the driver's payable balance is always
captured-minus-refunded funds net of the platform fee.
"""
import uuid
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_payments.config import get_settings
from ride_payments.core.errors import PaymentValidationError
from ride_payments.core.money import percent_of
from ride_payments.database.connection import get_session_factory
from ride_payments.database.models import (
    EarningsAdjustment,
    EarningsRecord,
    EarningsStatus,
    PaymentIntent,
    PaymentRefund,
    utcnow,
)
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class EarningsPoster:
    """Derives idempotent driver earnings from captures and refunds."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        platform_fee_percent: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self.platform_fee_percent = (
            platform_fee_percent
            if platform_fee_percent is not None
            else get_settings().platform_fee_percent
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    def compute_split(self, gross_amount: int) -> Dict[str, int]:
        """Platform fee and driver net for a gross amount in cents."""
        platform_fee = percent_of(gross_amount, self.platform_fee_percent)
        return {
            "gross_amount": gross_amount,
            "platform_fee": platform_fee,
            "net_amount": gross_amount - platform_fee,
        }

    async def post_capture(
        self, db: AsyncSession, intent: PaymentIntent, captured_amount: int
    ) -> EarningsRecord:
        """
        Upsert the earnings record for a captured booking.

        Keyed by booking id: a second call for the same booking returns the
        existing record instead of posting again.
        """
        if captured_amount <= 0:
            raise PaymentValidationError("Captured amount must be positive")

        result = await db.execute(
            select(EarningsRecord).where(EarningsRecord.booking_id == intent.booking_id)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            metrics.record_earnings_posted("duplicate")
            logger.info(
                "earnings_already_posted",
                booking_id=str(intent.booking_id),
                earnings_record_id=str(existing.id),
            )
            return existing

        split = self.compute_split(captured_amount)
        record = EarningsRecord(
            id=uuid.uuid4(),
            driver_id=intent.driver_id,
            ride_id=intent.ride_id,
            booking_id=intent.booking_id,
            payment_intent_id=intent.id,
            platform_fee_percent=self.platform_fee_percent,
            status=EarningsStatus.PENDING,
            **split,
        )
        db.add(record)
        metrics.record_earnings_posted("created")

        logger.info(
            "earnings_posted",
            earnings_record_id=str(record.id),
            driver_id=str(intent.driver_id),
            booking_id=str(intent.booking_id),
            **split,
        )
        return record

    async def apply_refund(
        self, db: AsyncSession, intent: PaymentIntent, refund: PaymentRefund
    ) -> Optional[EarningsAdjustment]:
        """
        Append the reversal for one refund.

        Deltas are computed against the cumulative position so that a full
        refund always lands the record at exactly zero despite rounding.
        """
        result = await db.execute(
            select(EarningsRecord).where(EarningsRecord.booking_id == intent.booking_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            logger.info(
                "earnings_refund_without_record",
                booking_id=str(intent.booking_id),
                refund_id=str(refund.id),
            )
            return None

        existing = await db.execute(
            select(EarningsAdjustment).where(EarningsAdjustment.refund_id == refund.id)
        )
        adjustment = existing.scalar_one_or_none()
        if adjustment is not None:
            return adjustment

        totals = await db.execute(
            select(
                func.coalesce(func.sum(EarningsAdjustment.gross_delta), 0),
                func.coalesce(func.sum(EarningsAdjustment.platform_fee_delta), 0),
            ).where(EarningsAdjustment.earnings_record_id == record.id)
        )
        gross_delta_sum, fee_delta_sum = totals.one()

        current_gross = record.gross_amount + int(gross_delta_sum)
        current_fee = record.platform_fee + int(fee_delta_sum)
        remaining_gross = max(current_gross - refund.amount, 0)
        target_fee = percent_of(remaining_gross, record.platform_fee_percent)

        gross_delta = remaining_gross - current_gross
        fee_delta = target_fee - current_fee
        adjustment = EarningsAdjustment(
            id=uuid.uuid4(),
            earnings_record_id=record.id,
            refund_id=refund.id,
            driver_id=record.driver_id,
            gross_delta=gross_delta,
            platform_fee_delta=fee_delta,
            net_delta=gross_delta - fee_delta,
            status=EarningsStatus.PENDING,
        )
        db.add(adjustment)
        metrics.record_earnings_adjustment()

        logger.info(
            "earnings_adjusted",
            earnings_record_id=str(record.id),
            refund_id=str(refund.id),
            gross_delta=gross_delta,
            platform_fee_delta=fee_delta,
            net_delta=adjustment.net_delta,
        )
        return adjustment

    async def get_for_booking(self, booking_id: uuid.UUID) -> Optional[EarningsRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(EarningsRecord).where(EarningsRecord.booking_id == booking_id)
            )
            return result.scalar_one_or_none()

    async def list_adjustments(self, earnings_record_id: uuid.UUID) -> List[EarningsAdjustment]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(EarningsAdjustment)
                .where(EarningsAdjustment.earnings_record_id == earnings_record_id)
                .order_by(EarningsAdjustment.created_at)
            )
            return list(result.scalars().all())

    async def list_pending(
        self, driver_id: Optional[uuid.UUID] = None, limit: int = 500
    ) -> Dict[str, List[Any]]:
        """
        Pending records and adjustments for the payout batcher.

        Returns:
            Dict with ``records`` and ``adjustments`` lists, oldest first
        """
        async with self.session_factory() as db:
            records_stmt = select(EarningsRecord).where(
                EarningsRecord.status == EarningsStatus.PENDING
            )
            adjustments_stmt = select(EarningsAdjustment).where(
                EarningsAdjustment.status == EarningsStatus.PENDING
            )
            if driver_id is not None:
                records_stmt = records_stmt.where(EarningsRecord.driver_id == driver_id)
                adjustments_stmt = adjustments_stmt.where(
                    EarningsAdjustment.driver_id == driver_id
                )

            records = await db.execute(
                records_stmt.order_by(EarningsRecord.created_at).limit(limit)
            )
            adjustments = await db.execute(
                adjustments_stmt.order_by(EarningsAdjustment.created_at).limit(limit)
            )
            return {
                "records": list(records.scalars().all()),
                "adjustments": list(adjustments.scalars().all()),
            }

    async def mark_paid(
        self,
        record_ids: Sequence[uuid.UUID],
        adjustment_ids: Sequence[uuid.UUID],
        payout_batch_id: str,
    ) -> Dict[str, int]:
        """
        Settle records and adjustments into a payout batch.

        Only pending rows are touched, so replaying a batch is harmless.
        """
        now = utcnow()
        async with self.session_factory() as db:
            records_paid = 0
            adjustments_paid = 0
            if record_ids:
                result = await db.execute(
                    update(EarningsRecord)
                    .where(
                        EarningsRecord.id.in_(list(record_ids)),
                        EarningsRecord.status == EarningsStatus.PENDING,
                    )
                    .values(
                        status=EarningsStatus.PAID,
                        payout_batch_id=payout_batch_id,
                        paid_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                records_paid = result.rowcount
            if adjustment_ids:
                result = await db.execute(
                    update(EarningsAdjustment)
                    .where(
                        EarningsAdjustment.id.in_(list(adjustment_ids)),
                        EarningsAdjustment.status == EarningsStatus.PENDING,
                    )
                    .values(
                        status=EarningsStatus.PAID,
                        payout_batch_id=payout_batch_id,
                        paid_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                adjustments_paid = result.rowcount
            await db.commit()

        logger.info(
            "earnings_marked_paid",
            payout_batch_id=payout_batch_id,
            records=records_paid,
            adjustments=adjustments_paid,
        )
        return {"records": records_paid, "adjustments": adjustments_paid}

    async def driver_balance(self, driver_id: uuid.UUID) -> int:
        """Net cents payable to a driver: pending records plus pending adjustments."""
        async with self.session_factory() as db:
            records_total = await db.execute(
                select(func.coalesce(func.sum(EarningsRecord.net_amount), 0)).where(
                    EarningsRecord.driver_id == driver_id,
                    EarningsRecord.status == EarningsStatus.PENDING,
                )
            )
            adjustments_total = await db.execute(
                select(func.coalesce(func.sum(EarningsAdjustment.net_delta), 0)).where(
                    EarningsAdjustment.driver_id == driver_id,
                    EarningsAdjustment.status == EarningsStatus.PENDING,
                )
            )
            return int(records_total.scalar_one()) + int(adjustments_total.scalar_one())
