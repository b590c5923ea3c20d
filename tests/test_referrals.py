"""
Tests for referral discount grants.
"""
import uuid
from typing import Any

import pytest

from ride_payments.core.errors import PaymentValidationError, PolicyViolation
from ride_payments.database.models import GrantRole, GrantStatus


class TestReferralGrants:
    """Registration, reservation and settlement of referral grants."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_register_creates_linked_grants(self, services: Any) -> None:
        referrer, rider = uuid.uuid4(), uuid.uuid4()

        grant = await services.referrals.register_referral(referrer, rider)

        assert grant.role is GrantRole.REFERRED
        assert grant.status is GrantStatus.PENDING
        assert grant.percent == 10
        [reward] = await services.referrals.list_grants(referrer)
        assert reward.id == grant.referrer_grant_id
        assert reward.status is GrantStatus.UNAVAILABLE
        assert reward.referral_use_id == grant.referral_use_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_self_referral_rejected(self, services: Any) -> None:
        rider = uuid.uuid4()
        with pytest.raises(PaymentValidationError):
            await services.referrals.register_referral(rider, rider)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rider_referred_only_once(self, services: Any) -> None:
        rider = uuid.uuid4()
        await services.referrals.register_referral(uuid.uuid4(), rider)

        with pytest.raises(PolicyViolation, match="already been referred"):
            await services.referrals.register_referral(uuid.uuid4(), rider)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_grant_applies_to_one_booking_only(
        self, services: Any, authorize_booking: Any
    ) -> None:
        rider = uuid.uuid4()
        await services.referrals.register_referral(uuid.uuid4(), rider)

        first = await authorize_booking(rider_id=rider, subtotal=3000)
        second = await authorize_booking(rider_id=rider, subtotal=3000)

        assert first.discount_amount == 300
        assert second.discount_amount == 0
        assert second.referral_grant_id is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_releases_reserved_grant(
        self, services: Any, authorize_booking: Any
    ) -> None:
        rider = uuid.uuid4()
        grant = await services.referrals.register_referral(uuid.uuid4(), rider)
        first = await authorize_booking(rider_id=rider, subtotal=3000)

        await services.ledger.cancel(first.id)

        [released] = await services.referrals.list_grants(rider)
        assert released.status is GrantStatus.PENDING
        assert released.reserved_by_intent_id is None

        rebooked = await authorize_booking(rider_id=rider, subtotal=2000)
        assert rebooked.referral_grant_id == grant.id
        assert rebooked.discount_amount == 200

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declined_authorization_releases_grant(
        self, services: Any, authorize_booking: Any, gateway: Any
    ) -> None:
        from ride_payments.integrations.provider import ProviderTerminalError

        rider = uuid.uuid4()
        await services.referrals.register_referral(uuid.uuid4(), rider)
        gateway.fail_next("authorize", ProviderTerminalError("Card declined", code="card_declined"))

        with pytest.raises(ProviderTerminalError):
            await authorize_booking(rider_id=rider)

        [grant] = await services.referrals.list_grants(rider)
        assert grant.reserved_by_intent_id is None
        assert grant.status is GrantStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_referrer_reward_used_on_their_next_booking(
        self, services: Any, authorize_booking: Any
    ) -> None:
        referrer, rider = uuid.uuid4(), uuid.uuid4()
        await services.referrals.register_referral(referrer, rider)

        # Locked until the referred rider's discounted booking is captured
        locked = await authorize_booking(rider_id=referrer, subtotal=3000)
        assert locked.discount_amount == 0

        referred = await authorize_booking(rider_id=rider, subtotal=3000)
        await services.queue.enqueue(referred.id)
        await services.worker.run_once()

        rewarded = await authorize_booking(rider_id=referrer, subtotal=5000)
        assert rewarded.discount_amount == 500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expire_unused_grant(self, services: Any, authorize_booking: Any) -> None:
        rider = uuid.uuid4()
        grant = await services.referrals.register_referral(uuid.uuid4(), rider)

        expired = await services.referrals.expire(grant.id)

        assert expired.status is GrantStatus.EXPIRED
        assert (await authorize_booking(rider_id=rider)).discount_amount == 0
        # Expiring twice is a no-op
        assert (await services.referrals.expire(grant.id)).status is GrantStatus.EXPIRED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserved_grant_cannot_expire(
        self, services: Any, authorize_booking: Any
    ) -> None:
        rider = uuid.uuid4()
        grant = await services.referrals.register_referral(uuid.uuid4(), rider)
        await authorize_booking(rider_id=rider)

        with pytest.raises(PolicyViolation, match="reserved"):
            await services.referrals.expire(grant.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_grant(self, services: Any) -> None:
        with pytest.raises(PaymentValidationError):
            await services.referrals.expire(uuid.uuid4())
