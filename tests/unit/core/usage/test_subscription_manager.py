"""Unit tests for SubscriptionManager."""

from datetime import timedelta

import pytest

from tierguard.core.usage.exceptions import SubscriptionNotFoundError, TierTransitionError
from tierguard.core.usage.schemas import SubscriptionStatus
from tierguard.core.usage.tiers import Tier


class TestCreate:
    """Tests for subscription creation."""

    @pytest.mark.asyncio
    async def test_create_free_has_no_end(self, manager):
        subscription = await manager.create("user-1")

        assert subscription.tier == Tier.FREE
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_end is None
        assert subscription.auto_renew is False
        assert subscription.amount_paid_cents == 0

    @pytest.mark.asyncio
    async def test_create_paid_tier(self, manager, clock):
        subscription = await manager.create("user-1", Tier.PRO)

        assert subscription.current_period_end == clock() + timedelta(days=30)
        assert subscription.auto_renew is True
        assert subscription.amount_paid_cents == 2000

    @pytest.mark.asyncio
    async def test_create_twice_raises(self, manager):
        await manager.create("user-1")
        with pytest.raises(TierTransitionError):
            await manager.create("user-1", Tier.PRO)

    @pytest.mark.asyncio
    async def test_get_or_create(self, manager):
        first = await manager.get_or_create_subscription("user-1")
        second = await manager.get_or_create_subscription("user-1")
        assert first.id == second.id


class TestProration:
    """Tests for prorated upgrades."""

    @pytest.mark.asyncio
    async def test_free_to_pro_charges_full_price(self, manager):
        await manager.create("user-1")
        result = await manager.upgrade("user-1", Tier.PRO)

        assert result.prorated_amount_cents == 2000
        assert result.prorated_amount == 20.0
        assert result.subscription.tier == Tier.PRO

    @pytest.mark.asyncio
    async def test_pro_to_business_half_cycle_remaining(self, manager, clock):
        await manager.create("user-1", Tier.PRO)
        clock.advance(days=15)

        result = await manager.upgrade("user-1", Tier.BUSINESS)

        # 99.00 - 20.00 * 0.5
        assert result.prorated_amount_cents == 8900
        assert result.prorated_amount == 89.0

    @pytest.mark.asyncio
    async def test_credit_clamped_when_period_already_ended(self, manager, clock):
        await manager.create("user-1", Tier.PRO)
        clock.advance(days=31)

        result = await manager.upgrade("user-1", Tier.BUSINESS)
        assert result.prorated_amount_cents == 9900

    @pytest.mark.asyncio
    async def test_charge_never_negative(self, manager):
        subscription = await manager.create("user-1", Tier.BUSINESS)
        assert manager.calculate_prorated_amount(subscription, Tier.BYOK) == 0

    @pytest.mark.asyncio
    async def test_upgrade_starts_new_period(self, manager, clock):
        await manager.create("user-1", Tier.PRO)
        clock.advance(days=10)

        result = await manager.upgrade("user-1", Tier.BUSINESS)

        assert result.subscription.current_period_start == clock()
        assert result.subscription.current_period_end == clock() + timedelta(days=30)
        assert result.subscription.status == SubscriptionStatus.ACTIVE


class TestUpgradeDowngrade:
    """Tests for tier transitions."""

    @pytest.mark.asyncio
    async def test_upgrade_to_lower_tier_raises(self, manager):
        await manager.create("user-1", Tier.BUSINESS)
        with pytest.raises(TierTransitionError):
            await manager.upgrade("user-1", Tier.PRO)

    @pytest.mark.asyncio
    async def test_upgrade_without_subscription_raises(self, manager):
        with pytest.raises(SubscriptionNotFoundError):
            await manager.upgrade("nobody", Tier.PRO)

    @pytest.mark.asyncio
    async def test_downgrade_is_scheduled_at_period_end(self, manager):
        created = await manager.create("user-1", Tier.BUSINESS)

        updated = await manager.downgrade("user-1", Tier.PRO)

        assert updated.tier == Tier.BUSINESS
        assert updated.scheduled_tier == Tier.PRO
        assert updated.scheduled_change_date == created.current_period_end
        assert await manager.get_effective_tier("user-1") == Tier.BUSINESS

    @pytest.mark.asyncio
    async def test_downgrade_to_higher_tier_raises(self, manager):
        await manager.create("user-1", Tier.PRO)
        with pytest.raises(TierTransitionError):
            await manager.downgrade("user-1", Tier.BUSINESS)

    @pytest.mark.asyncio
    async def test_upgrade_clears_scheduled_downgrade(self, manager):
        await manager.create("user-1", Tier.PRO)
        await manager.downgrade("user-1", Tier.FREE)

        result = await manager.upgrade("user-1", Tier.BUSINESS)

        assert result.subscription.scheduled_tier is None
        assert result.subscription.scheduled_change_date is None


class TestCancelReactivate:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_keeps_access_until_period_end(self, manager, clock):
        await manager.create("user-1", Tier.PRO)

        cancelled = await manager.cancel("user-1", reason="too expensive")

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.auto_renew is False
        assert cancelled.cancellation_reason == "too expensive"
        assert await manager.get_effective_tier("user-1") == Tier.PRO

        clock.advance(days=34)
        assert await manager.get_effective_tier("user-1") == Tier.FREE

    @pytest.mark.asyncio
    async def test_cancel_twice_raises(self, manager):
        await manager.create("user-1", Tier.PRO)
        await manager.cancel("user-1")
        with pytest.raises(TierTransitionError):
            await manager.cancel("user-1")

    @pytest.mark.asyncio
    async def test_reactivate_restores_active(self, manager):
        created = await manager.create("user-1", Tier.PRO)
        await manager.cancel("user-1")

        reactivated = await manager.reactivate("user-1")

        assert reactivated.status == SubscriptionStatus.ACTIVE
        assert reactivated.auto_renew is True
        assert reactivated.cancelled_at is None
        assert reactivated.current_period_end == created.current_period_end

    @pytest.mark.asyncio
    async def test_reactivate_requires_cancelled(self, manager):
        await manager.create("user-1", Tier.PRO)
        with pytest.raises(TierTransitionError):
            await manager.reactivate("user-1")

    @pytest.mark.asyncio
    async def test_mark_past_due(self, manager):
        await manager.create("user-1", Tier.PRO)

        first = await manager.mark_past_due("user-1")
        second = await manager.mark_past_due("user-1")

        assert first.status == SubscriptionStatus.PAST_DUE
        assert second.status == SubscriptionStatus.PAST_DUE


class TestStatus:
    """Tests for derived status and effective tier."""

    @pytest.mark.asyncio
    async def test_within_grace_is_past_due(self, manager, clock):
        await manager.create("user-1", Tier.PRO)
        clock.advance(days=31)

        assert await manager.get_subscription_status("user-1") == SubscriptionStatus.PAST_DUE
        assert await manager.get_effective_tier("user-1") == Tier.PRO

    @pytest.mark.asyncio
    async def test_beyond_grace_is_expired(self, manager, clock):
        await manager.create("user-1", Tier.PRO)
        clock.advance(days=34)

        assert await manager.get_subscription_status("user-1") == SubscriptionStatus.EXPIRED
        assert await manager.get_effective_tier("user-1") == Tier.FREE
        assert not await manager.is_subscription_active("user-1")

    @pytest.mark.asyncio
    async def test_no_subscription(self, manager):
        assert await manager.get_subscription_status("nobody") == SubscriptionStatus.EXPIRED
        assert await manager.get_effective_tier("nobody") == Tier.FREE
        assert await manager.get_days_until_expiration("nobody") is None

    @pytest.mark.asyncio
    async def test_lookup_failure_resolves_to_free(self, manager, subscription_store):
        await manager.create("user-1", Tier.BUSINESS)
        subscription_store.fail_reads = True

        assert await manager.get_effective_tier("user-1") == Tier.FREE

    @pytest.mark.asyncio
    async def test_days_until_expiration(self, manager, clock):
        await manager.create("user-1", Tier.PRO)
        clock.advance(days=20, hours=12)

        assert await manager.get_days_until_expiration("user-1") == 10


class TestRenewExpire:
    """Tests for the sweep transitions."""

    @pytest.mark.asyncio
    async def test_renew_applies_scheduled_tier(self, manager, clock):
        created = await manager.create("user-1", Tier.BUSINESS)
        await manager.downgrade("user-1", Tier.PRO)
        clock.advance(days=30, seconds=1)

        renewed = await manager.renew(created.id)

        assert renewed.tier == Tier.PRO
        assert renewed.scheduled_tier is None
        assert renewed.amount_paid_cents == 2000
        assert renewed.current_period_end == clock() + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_renew_to_free_has_no_end(self, manager):
        created = await manager.create("user-1", Tier.PRO)
        await manager.downgrade("user-1", Tier.FREE)

        renewed = await manager.renew(created.id)

        assert renewed.tier == Tier.FREE
        assert renewed.current_period_end is None

    @pytest.mark.asyncio
    async def test_expire_is_idempotent(self, manager):
        created = await manager.create("user-1", Tier.PRO)

        first = await manager.expire(created.id)
        second = await manager.expire(created.id)

        assert first.tier == Tier.FREE
        assert first.status == SubscriptionStatus.EXPIRED
        assert second.updated_at == first.updated_at

    @pytest.mark.asyncio
    async def test_expire_unknown_raises(self, manager):
        with pytest.raises(SubscriptionNotFoundError):
            await manager.expire("missing-id")
