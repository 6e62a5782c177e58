"""
Feature gating on top of the tier table and the user's effective tier.

Fails closed: if the user's tier cannot be determined the feature is denied.
"""

import logging
from typing import Dict, Iterable, List, Optional

from .exceptions import FeatureNotAvailableError
from .schemas import FeatureAccess
from .subscription_manager import SubscriptionManager, get_subscription_manager
from .tiers import (
    FEATURE_DESCRIPTIONS,
    TIER_HIERARCHY,
    Tier,
    get_available_features,
    has_feature,
)

logger = logging.getLogger(__name__)


def minimum_tier_for(feature: str) -> Optional[Tier]:
    """Lowest tier in the hierarchy that includes a feature."""
    for tier in TIER_HIERARCHY:
        if has_feature(tier, feature):
            return tier
    return None


class FeatureGate:
    """Boolean feature-access checks for users."""

    def __init__(self, subscriptions: Optional[SubscriptionManager] = None):
        self._subscriptions = subscriptions or get_subscription_manager()

    async def get_user_tier(self, user_id: str) -> Tier:
        """Effective tier of the user (free when unknown)."""
        return await self._subscriptions.get_effective_tier(user_id)

    async def has_feature(self, user_id: str, feature: str) -> bool:
        """Check if the user's tier includes a feature. False on any error."""
        try:
            tier = await self.get_user_tier(user_id)
            return has_feature(tier, feature)
        except Exception as e:
            logger.error(f"Feature check failed for user {user_id} ({feature}), denying: {e}")
            return False

    async def require_feature(self, user_id: str, feature: str) -> None:
        """
        Raise unless the user's tier includes a feature.

        Raises:
            FeatureNotAvailableError: feature not in the user's tier (403)
        """
        tier = await self.get_user_tier(user_id)
        if has_feature(tier, feature):
            return

        required = minimum_tier_for(feature)
        label = FEATURE_DESCRIPTIONS.get(feature, feature)
        if required is not None:
            message = f"{label} requires the {required.value} tier or higher (current: {tier.value})"
        else:
            message = None
        raise FeatureNotAvailableError(feature=feature, current_tier=tier.value, message=message)

    async def get_available_features(self, user_id: str) -> List[str]:
        """All features of the user's tier, including inherited ones."""
        tier = await self.get_user_tier(user_id)
        return get_available_features(tier)

    async def has_features(self, user_id: str, features: Iterable[str]) -> Dict[str, bool]:
        """Batch check; one tier lookup for all features."""
        features = list(features)
        try:
            tier = await self.get_user_tier(user_id)
        except Exception as e:
            logger.error(f"Feature check failed for user {user_id}, denying all: {e}")
            return {feature: False for feature in features}
        return {feature: has_feature(tier, feature) for feature in features}

    async def can_access_feature(self, user_id: str, feature: str) -> FeatureAccess:
        """Feature access with the reason it was denied."""
        try:
            tier = await self.get_user_tier(user_id)
        except Exception as e:
            logger.error(f"Feature check failed for user {user_id} ({feature}), denying: {e}")
            return FeatureAccess(allowed=False, tier=Tier.FREE, reason="Unable to verify subscription")

        if has_feature(tier, feature):
            return FeatureAccess(allowed=True, tier=tier)

        required = minimum_tier_for(feature)
        if required is None:
            reason = f"Unknown feature: {feature}"
        else:
            reason = f"Requires {required.value} tier or higher"
        return FeatureAccess(allowed=False, tier=tier, reason=reason)


# Module-level instance for convenience
_feature_gate: Optional[FeatureGate] = None


def get_feature_gate() -> FeatureGate:
    """Get or create FeatureGate instance."""
    global _feature_gate
    if _feature_gate is None:
        _feature_gate = FeatureGate()
    return _feature_gate


__all__ = [
    "FeatureGate",
    "get_feature_gate",
    "minimum_tier_for",
]
