"""
Referral discount grants.

A referral creates two linked grants: the referred rider's discount (usable
immediately) and the referrer's reward (locked until the referred rider's
first discounted booking is captured). A grant is reserved by the intent that
applied it, consumed when that intent is captured, and handed back if the
intent is cancelled or fails.
"""
import uuid
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_payments.config import get_settings
from ride_payments.core.errors import PaymentValidationError, PolicyViolation
from ride_payments.database.connection import get_session_factory
from ride_payments.database.models import (
    GrantRole,
    GrantStatus,
    PaymentIntent,
    ReferralDiscountGrant,
    utcnow,
)

logger = structlog.get_logger(__name__)


class ReferralDiscountResolver:
    """Resolves, reserves and settles referral discount grants."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        discount_percent: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self.discount_percent = (
            discount_percent
            if discount_percent is not None
            else get_settings().referral_discount_percent
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def register_referral(
        self,
        referrer_id: uuid.UUID,
        referred_user_id: uuid.UUID,
        referral_use_id: Optional[uuid.UUID] = None,
    ) -> ReferralDiscountGrant:
        """
        Record that ``referrer_id`` brought in ``referred_user_id``.

        Returns:
            ReferralDiscountGrant: The referred rider's (pending) grant
        """
        if referrer_id == referred_user_id:
            raise PaymentValidationError("A rider cannot refer themselves")

        referral_use_id = referral_use_id or uuid.uuid4()

        async with self.session_factory() as db:
            existing = await db.execute(
                select(ReferralDiscountGrant.id).where(
                    ReferralDiscountGrant.beneficiary_id == referred_user_id,
                    ReferralDiscountGrant.role == GrantRole.REFERRED,
                )
            )
            if existing.first() is not None:
                raise PolicyViolation("Rider has already been referred")

            referrer_grant = ReferralDiscountGrant(
                id=uuid.uuid4(),
                referral_use_id=referral_use_id,
                beneficiary_id=referrer_id,
                role=GrantRole.REFERRER,
                percent=self.discount_percent,
                status=GrantStatus.UNAVAILABLE,
            )
            referred_grant = ReferralDiscountGrant(
                id=uuid.uuid4(),
                referral_use_id=referral_use_id,
                beneficiary_id=referred_user_id,
                role=GrantRole.REFERRED,
                percent=self.discount_percent,
                status=GrantStatus.PENDING,
                referrer_grant_id=referrer_grant.id,
            )
            db.add_all([referrer_grant, referred_grant])
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise PolicyViolation(f"Referral could not be recorded: {e.orig}") from e

        logger.info(
            "referral_registered",
            referral_use_id=str(referral_use_id),
            referrer_id=str(referrer_id),
            referred_user_id=str(referred_user_id),
        )
        return referred_grant

    async def list_grants(self, beneficiary_id: uuid.UUID) -> List[ReferralDiscountGrant]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ReferralDiscountGrant)
                .where(ReferralDiscountGrant.beneficiary_id == beneficiary_id)
                .order_by(ReferralDiscountGrant.created_at)
            )
            return list(result.scalars().all())

    async def reserve_for(
        self, db: AsyncSession, rider_id: uuid.UUID, intent_id: uuid.UUID
    ) -> Optional[ReferralDiscountGrant]:
        """
        Reserve at most one pending grant for a new intent.

        The rider's own referred discount wins over an unlocked referrer
        reward. The reservation is a conditional UPDATE, so two concurrent
        bookings by the same rider can never both take the same grant.
        """
        result = await db.execute(
            select(ReferralDiscountGrant)
            .where(
                ReferralDiscountGrant.beneficiary_id == rider_id,
                ReferralDiscountGrant.status == GrantStatus.PENDING,
                ReferralDiscountGrant.reserved_by_intent_id.is_(None),
            )
            .order_by(ReferralDiscountGrant.created_at)
        )
        candidates = sorted(
            result.scalars().all(), key=lambda g: g.role is not GrantRole.REFERRED
        )

        for grant in candidates:
            claimed = await db.execute(
                update(ReferralDiscountGrant)
                .where(
                    ReferralDiscountGrant.id == grant.id,
                    ReferralDiscountGrant.status == GrantStatus.PENDING,
                    ReferralDiscountGrant.reserved_by_intent_id.is_(None),
                )
                .values(reserved_by_intent_id=intent_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                grant.reserved_by_intent_id = intent_id
                logger.info(
                    "referral_grant_reserved",
                    grant_id=str(grant.id),
                    role=grant.role.value,
                    payment_intent_id=str(intent_id),
                )
                return grant

        return None

    async def release(self, db: AsyncSession, intent: PaymentIntent) -> None:
        """Hand a reserved grant back when its intent is cancelled or fails."""
        if intent.referral_grant_id is None:
            return

        result = await db.execute(
            update(ReferralDiscountGrant)
            .where(
                ReferralDiscountGrant.id == intent.referral_grant_id,
                ReferralDiscountGrant.reserved_by_intent_id == intent.id,
                ReferralDiscountGrant.status == GrantStatus.PENDING,
            )
            .values(reserved_by_intent_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                "referral_grant_released",
                grant_id=str(intent.referral_grant_id),
                payment_intent_id=str(intent.id),
            )

    async def consume_on_capture(self, db: AsyncSession, intent: PaymentIntent) -> None:
        """
        Mark the intent's grant Used and, for a referred grant, unlock the
        referrer's reward in the same transaction.
        """
        if intent.referral_grant_id is None:
            return

        grant = await db.get(ReferralDiscountGrant, intent.referral_grant_id)
        if grant is None or grant.status is GrantStatus.USED:
            return

        grant.status = GrantStatus.USED
        grant.used_at = utcnow()
        logger.info(
            "referral_grant_used",
            grant_id=str(grant.id),
            payment_intent_id=str(intent.id),
        )

        if grant.role is GrantRole.REFERRED and grant.referrer_grant_id is not None:
            unlocked = await db.execute(
                update(ReferralDiscountGrant)
                .where(
                    ReferralDiscountGrant.id == grant.referrer_grant_id,
                    ReferralDiscountGrant.status == GrantStatus.UNAVAILABLE,
                )
                .values(status=GrantStatus.PENDING, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if unlocked.rowcount:
                logger.info(
                    "referrer_reward_unlocked",
                    grant_id=str(grant.referrer_grant_id),
                    referral_use_id=str(grant.referral_use_id),
                )

    async def expire(self, grant_id: uuid.UUID) -> ReferralDiscountGrant:
        """Expire an unused grant. Grants reserved by an open intent cannot expire."""
        async with self.session_factory() as db:
            grant = await db.get(ReferralDiscountGrant, grant_id)
            if grant is None:
                raise PaymentValidationError(f"Referral grant {grant_id} not found")
            if grant.status is GrantStatus.EXPIRED:
                return grant
            if grant.status is GrantStatus.USED:
                raise PolicyViolation("Used grants cannot expire")
            if grant.reserved_by_intent_id is not None:
                raise PolicyViolation("Grant is reserved by an open payment")

            grant.status = GrantStatus.EXPIRED
            await db.commit()

        logger.info("referral_grant_expired", grant_id=str(grant_id))
        return grant
