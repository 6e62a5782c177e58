"""Unit tests for EnforcementFacade."""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from tierguard.core.usage.counters import CounterStore
from tierguard.core.usage.enforcement import EnforcementFacade
from tierguard.core.usage.exceptions import MissingProviderKeyError
from tierguard.core.usage.quota_enforcer import QuotaEnforcer
from tierguard.core.usage.schemas import ProviderKeys
from tierguard.core.usage.tiers import Tier


@pytest.fixture
def recorder():
    recorder = MagicMock()
    recorder.record_async = MagicMock()
    return recorder


@pytest.fixture
def facade(manager, quotas, recorder, byok, broadcaster):
    return EnforcementFacade(
        subscriptions=manager,
        quotas=quotas,
        recorder=recorder,
        byok=byok,
        warnings=broadcaster,
    )


class TestAIGeneration:
    """Check/track for AI generations."""

    @pytest.mark.asyncio
    async def test_free_user_hits_hourly_burst(self, facade, manager):
        await manager.create("u1")

        for _ in range(10):
            assert (await facade.check_ai_generation_allowed("u1")).allowed
            await facade.track_ai_generation("u1", tokens=100)

        result = await facade.check_ai_generation_allowed("u1")
        await facade.wait_for_background()

        assert not result.allowed
        assert result.error.operation == "ai_generation"
        assert result.use_byok is False

    @pytest.mark.asyncio
    async def test_failed_attempt_consumes_nothing(self, facade, manager, quotas):
        await manager.create("u1")

        for _ in range(50):
            assert (await facade.check_ai_generation_allowed("u1")).allowed

        rate = await quotas.check_rate_limit("u1", Tier.FREE, "ai_generation")
        assert rate.remaining == 10

    @pytest.mark.asyncio
    async def test_byok_user_is_never_denied(self, facade, manager, byok):
        await manager.create("u1", Tier.BYOK)
        await byok.set_user_api_keys("u1", ProviderKeys(openai="sk-1"))

        for _ in range(200):
            result = await facade.check_ai_generation_allowed("u1", provider="openai")
            assert result.allowed
            assert result.use_byok
            await facade.track_ai_generation("u1")
        await facade.wait_for_background()

    @pytest.mark.asyncio
    async def test_byok_usage_is_recorded_with_tag(self, facade, manager, recorder):
        await manager.create("u1", Tier.BYOK)

        await facade.track_ai_generation("u1", tokens=42)
        await facade.wait_for_background()

        user_id, operation, amount, metadata = recorder.record_async.call_args.args
        assert (user_id, operation, amount) == ("u1", "ai_generation", 1)
        assert metadata["byok"] is True
        assert metadata["tokens"] == 42

    @pytest.mark.asyncio
    async def test_byok_user_without_provider_key(self, facade, manager):
        await manager.create("u1", Tier.BYOK)

        with pytest.raises(MissingProviderKeyError):
            await facade.check_ai_generation_allowed("u1", provider="anthropic")

    @pytest.mark.asyncio
    async def test_lapsed_byok_falls_back_to_quotas(self, facade, manager, clock):
        await manager.create("u1", Tier.BYOK)
        clock.advance(days=40)

        result = await facade.check_ai_generation_allowed("u1")

        assert result.allowed
        assert result.use_byok is False


class TestWorkflowsAndApps:

    @pytest.mark.asyncio
    async def test_free_user_cannot_run_workflows(self, facade, manager):
        await manager.create("u1")

        result = await facade.check_workflow_execution_allowed("u1")

        assert not result.allowed
        assert result.error.limit == 0
        assert result.error.upgrade_tier == "byok"

    @pytest.mark.asyncio
    async def test_app_limit_uses_app_count(self, facade, manager, usage_store):
        await manager.create("u1")
        usage_store.app_counts["u1"] = 5

        assert not (await facade.check_app_creation_allowed("u1")).allowed

        await manager.upgrade("u1", Tier.PRO)
        assert (await facade.check_app_creation_allowed("u1")).allowed

    @pytest.mark.asyncio
    async def test_workflow_tracking_records_ledger(self, facade, manager, recorder):
        await manager.create("u1", Tier.PRO)

        await facade.track_workflow_execution("u1")
        await facade.wait_for_background()

        recorder.record_async.assert_called_once_with("u1", "workflow_execution", 1, {})


class TestNotifications:

    @pytest.mark.asyncio
    async def test_tracking_pushes_warning_and_snapshot(self, facade, manager, usage_store, channel):
        await manager.create("u1")
        usage_store.app_counts["u1"] = 4

        await facade.track_app_creation("u1")
        await facade.wait_for_background()

        warnings = channel.of_type("limit_warning")
        assert len(warnings) == 1
        assert warnings[0]["threshold"] == 70
        snapshot = channel.of_type("usage_updated")[-1]
        assert snapshot["usage"]["apps"] == 4
        assert snapshot["limits"]["apps"] == 5

    @pytest.mark.asyncio
    async def test_snapshot(self, facade, manager):
        await manager.create("u1", Tier.PRO)
        await facade.track_ai_generation("u1")
        for _ in range(5):
            await facade.track_workflow_execution("u1")
        await facade.wait_for_background()

        snapshot = await facade.get_usage_snapshot("u1")

        assert snapshot.tier == Tier.PRO
        assert snapshot.usage == {"ai_generations": 1, "apps": 0, "workflows": 5}
        assert snapshot.limits["ai_generations"] == 2000
        assert snapshot.percentages["workflows"] == 1.0


class TestFailOpen:

    @pytest.mark.asyncio
    async def test_backend_outage_allows_and_tracking_never_raises(
        self, manager, usage_store, recorder, byok, broadcaster, caplog
    ):
        counters = MagicMock(spec=CounterStore)
        counters.increment = AsyncMock(side_effect=ConnectionError("redis down"))
        counters.get_remaining_limit = AsyncMock(side_effect=ConnectionError("redis down"))
        facade = EnforcementFacade(
            subscriptions=manager,
            quotas=QuotaEnforcer(counters=counters, usage_store=usage_store, timeout_seconds=1.0),
            recorder=recorder,
            byok=byok,
            warnings=broadcaster,
        )
        await manager.create("u1", Tier.PRO)

        with caplog.at_level(logging.ERROR):
            assert (await facade.check_ai_generation_allowed("u1")).allowed
            await facade.track_ai_generation("u1")
            await facade.wait_for_background()

        assert "redis down" in caplog.text
        recorder.record_async.assert_called_once()
