"""Unit tests for SubscriptionChecker sweeps."""

from unittest.mock import patch

import pytest

from tierguard.core.usage.schemas import SubscriptionStatus, SweepReport
from tierguard.core.usage.subscription_checker import SubscriptionChecker
from tierguard.core.usage.tiers import Tier


@pytest.fixture
def checker(manager, subscription_store):
    return SubscriptionChecker(manager=manager, store=subscription_store)


class TestExpirySweep:
    """Tests for check_expired_subscriptions."""

    @pytest.mark.asyncio
    async def test_expires_past_grace(self, manager, checker, subscription_store, clock):
        created = await manager.create("user-1", Tier.PRO)
        clock.advance(days=34)

        expired = await checker.check_expired_subscriptions()

        assert expired == 1
        row = subscription_store.rows[created.id]
        assert row.tier == Tier.FREE
        assert row.status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_within_grace_is_untouched(self, manager, checker, subscription_store, clock):
        created = await manager.create("user-1", Tier.PRO)
        clock.advance(days=31)

        assert await checker.check_expired_subscriptions() == 0
        assert subscription_store.rows[created.id].tier == Tier.PRO

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, manager, checker, clock):
        await manager.create("user-1", Tier.PRO)
        clock.advance(days=40)

        assert await checker.check_expired_subscriptions() == 1
        assert await checker.check_expired_subscriptions() == 0

    @pytest.mark.asyncio
    async def test_continues_after_failing_record(self, manager, checker, subscription_store, clock):
        first = await manager.create("user-1", Tier.PRO)
        second = await manager.create("user-2", Tier.BUSINESS)
        clock.advance(days=40)

        original_expire = manager.expire

        async def flaky_expire(subscription_id):
            if subscription_id == first.id:
                raise ConnectionError("write failed")
            return await original_expire(subscription_id)

        report = SweepReport()
        with patch.object(manager, "expire", side_effect=flaky_expire):
            expired = await checker.check_expired_subscriptions(report)

        assert expired == 1
        assert subscription_store.rows[second.id].status == SubscriptionStatus.EXPIRED
        assert subscription_store.rows[first.id].status == SubscriptionStatus.ACTIVE
        assert len(report.errors) == 1
        assert first.id in report.errors[0]

    @pytest.mark.asyncio
    async def test_skips_record_changed_since_query(self, manager, checker, subscription_store, clock):
        created = await manager.create("user-1", Tier.PRO)
        clock.advance(days=40)

        stale = await subscription_store.find_expiring(clock())
        await manager.cancel("user-1")

        with patch.object(subscription_store, "find_expiring", return_value=stale):
            assert await checker.check_expired_subscriptions() == 0
        assert subscription_store.rows[created.id].status == SubscriptionStatus.CANCELLED


class TestScheduledChanges:
    """Tests for process_scheduled_tier_changes."""

    @pytest.mark.asyncio
    async def test_applies_due_downgrade(self, manager, checker, subscription_store, clock):
        created = await manager.create("user-1", Tier.BUSINESS)
        await manager.downgrade("user-1", Tier.PRO)
        clock.advance(days=30, seconds=1)

        renewed = await checker.process_scheduled_tier_changes()

        assert renewed == 1
        row = subscription_store.rows[created.id]
        assert row.tier == Tier.PRO
        assert row.scheduled_tier is None

    @pytest.mark.asyncio
    async def test_future_change_is_ignored(self, manager, checker, clock):
        await manager.create("user-1", Tier.BUSINESS)
        await manager.downgrade("user-1", Tier.PRO)
        clock.advance(days=10)

        assert await checker.process_scheduled_tier_changes() == 0

    @pytest.mark.asyncio
    async def test_is_idempotent(self, manager, checker, clock):
        await manager.create("user-1", Tier.BUSINESS)
        await manager.downgrade("user-1", Tier.PRO)
        clock.advance(days=31)

        assert await checker.process_scheduled_tier_changes() == 1
        assert await checker.process_scheduled_tier_changes() == 0


class TestRunScheduledCheck:
    """Tests for the combined sweep."""

    @pytest.mark.asyncio
    async def test_report_counts(self, manager, checker, clock):
        await manager.create("user-1", Tier.BUSINESS)
        await manager.downgrade("user-1", Tier.PRO)
        await manager.create("user-2", Tier.PRO)
        await manager.cancel("user-2")
        await manager.create("user-3", Tier.PRO)
        clock.advance(days=40)

        report = await checker.run_scheduled_check()

        # user-1 renews onto pro before the expiry pass; cancelled user-2 is not a target
        assert report.renewed == 1
        assert report.expired == 1
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_expiry_runs_when_scheduled_query_fails(self, manager, checker, subscription_store, clock):
        created = await manager.create("user-1", Tier.PRO)
        clock.advance(days=40)

        with patch.object(
            subscription_store, "find_scheduled_changes", side_effect=ConnectionError("db down")
        ):
            report = await checker.run_scheduled_check()

        assert report.renewed == 0
        assert report.expired == 1
        assert subscription_store.rows[created.id].status == SubscriptionStatus.EXPIRED
        assert len(report.errors) == 1
        assert "db down" in report.errors[0]

    @pytest.mark.asyncio
    async def test_renewal_runs_when_expiry_query_fails(self, manager, checker, subscription_store, clock):
        created = await manager.create("user-1", Tier.BUSINESS)
        await manager.downgrade("user-1", Tier.PRO)
        clock.advance(days=31)

        with patch.object(subscription_store, "find_expiring", side_effect=ConnectionError("db down")):
            report = await checker.run_scheduled_check()

        assert report.renewed == 1
        assert report.expired == 0
        assert subscription_store.rows[created.id].tier == Tier.PRO
        assert report.errors == ["expire:query: db down"]
