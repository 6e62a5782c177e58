"""Unit tests for FeatureGate."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from tierguard.core.usage.exceptions import FeatureNotAvailableError
from tierguard.core.usage.feature_gate import FeatureGate, minimum_tier_for
from tierguard.core.usage.tiers import Tier


def _gate(tier=None, error=None):
    subscriptions = MagicMock()
    subscriptions.get_effective_tier = AsyncMock(return_value=tier, side_effect=error)
    return FeatureGate(subscriptions=subscriptions)


def test_minimum_tier_for():
    assert minimum_tier_for("basic_templates") == Tier.FREE
    assert minimum_tier_for("github_sync") == Tier.BYOK
    assert minimum_tier_for("white_label") == Tier.BUSINESS
    assert minimum_tier_for("sso") == Tier.ENTERPRISE
    assert minimum_tier_for("time_travel") is None


class TestFeatureGate:

    @pytest.mark.asyncio
    async def test_has_feature(self):
        gate = _gate(Tier.BUSINESS)
        assert await gate.has_feature("u1", "github_sync")
        assert not await gate.has_feature("u1", "sso")

    @pytest.mark.asyncio
    async def test_fails_closed(self):
        gate = _gate(error=RuntimeError("boom"))
        assert not await gate.has_feature("u1", "basic_templates")
        assert await gate.has_features("u1", ["basic_templates"]) == {"basic_templates": False}

    @pytest.mark.asyncio
    async def test_require_feature_names_required_tier(self):
        gate = _gate(Tier.PRO)

        with pytest.raises(FeatureNotAvailableError) as exc_info:
            await gate.require_feature("u1", "white_label")

        error = exc_info.value
        assert "business" in error.message
        assert error.to_response_dict()["status_code"] == 403
        assert error.to_response_dict()["current_tier"] == "pro"

    @pytest.mark.asyncio
    async def test_require_feature_allowed(self):
        await _gate(Tier.ENTERPRISE).require_feature("u1", "github_sync")

    @pytest.mark.asyncio
    async def test_has_features_batch(self):
        gate = _gate(Tier.FREE)
        result = await gate.has_features("u1", ["basic_templates", "github_sync"])
        assert result == {"basic_templates": True, "github_sync": False}
        gate._subscriptions.get_effective_tier.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_can_access_feature(self):
        gate = _gate(Tier.FREE)

        denied = await gate.can_access_feature("u1", "custom_domains")
        unknown = await gate.can_access_feature("u1", "time_travel")

        assert not denied.allowed
        assert denied.reason == "Requires byok tier or higher"
        assert unknown.reason == "Unknown feature: time_travel"

    @pytest.mark.asyncio
    async def test_available_features(self):
        features = await _gate(Tier.FREE).get_available_features("u1")
        assert "basic_templates" in features
        assert "github_sync" not in features
