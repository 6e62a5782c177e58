"""
Subscription tier configuration.

Static policy table for every tier (limits, features, price, position in the
upgrade order) plus the pure comparison and feature-inheritance helpers built
on it. Nothing in this module performs I/O.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, ConfigDict

from tierguard.constants import (
    RATE_WINDOW_HOUR,
    RATE_WINDOW_MINUTE,
    UNLIMITED,
)
from .exceptions import TierNotFoundError


class Tier(str, Enum):
    """Subscription tier names."""
    FREE = "free"
    BYOK = "byok"
    PRO = "pro"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


class TierLimits(BaseModel):
    """Limits, features and price for one tier. UNLIMITED (-1) disables a limit."""

    model_config = ConfigDict(frozen=True)

    max_apps: int
    ai_generations_per_month: int
    workflow_executions_per_month: int
    max_team_members: int
    custom_domains: int
    features: FrozenSet[str]
    price_cents: Optional[int]  # None for custom pricing

    @property
    def price(self) -> Optional[float]:
        """Price in dollars for display."""
        if self.price_cents is None:
            return None
        return self.price_cents / 100


class RateLimit(BaseModel):
    """Burst ceiling for one operation within a fixed window."""

    model_config = ConfigDict(frozen=True)

    limit: int
    window_seconds: int


# Upgrade/downgrade order, lowest first
TIER_HIERARCHY: List[Tier] = [
    Tier.FREE,
    Tier.BYOK,
    Tier.PRO,
    Tier.BUSINESS,
    Tier.ENTERPRISE,
]

# Markers that pull in another tier's feature list
INHERITANCE_MARKERS: Dict[str, Tier] = {
    "all_pro_features": Tier.PRO,
    "all_business_features": Tier.BUSINESS,
}

TIER_LIMITS: Dict[Tier, TierLimits] = {
    Tier.FREE: TierLimits(
        max_apps=5,
        ai_generations_per_month=100,
        workflow_executions_per_month=0,
        max_team_members=1,
        custom_domains=0,
        features=frozenset({
            "basic_templates",
            "public_deployments",
            "community_support",
            "basic_analytics",
        }),
        price_cents=0,
    ),
    Tier.BYOK: TierLimits(
        max_apps=20,
        ai_generations_per_month=UNLIMITED,  # billed to the user's own keys
        workflow_executions_per_month=500,
        max_team_members=1,
        custom_domains=3,
        features=frozenset({
            "all_templates",
            "custom_domains",
            "github_sync",
            "own_api_keys",
            "byok_pricing",
            "email_support",
            "private_deployments",
        }),
        price_cents=1500,
    ),
    Tier.PRO: TierLimits(
        max_apps=50,
        ai_generations_per_month=2000,
        workflow_executions_per_month=500,
        max_team_members=1,
        custom_domains=3,
        features=frozenset({
            "all_templates",
            "custom_domains",
            "github_sync",
            "priority_generation",
            "email_support",
            "advanced_analytics",
            "private_deployments",
            "api_access",
        }),
        price_cents=2000,
    ),
    Tier.BUSINESS: TierLimits(
        max_apps=UNLIMITED,
        ai_generations_per_month=10000,
        workflow_executions_per_month=5000,
        max_team_members=10,
        custom_domains=10,
        features=frozenset({
            "all_pro_features",
            "white_label",
            "team_collaboration",
            "n8n_workflows",
            "private_deployments",
            "sla",
            "advanced_security",
            "audit_logs",
            "priority_support",
        }),
        price_cents=9900,
    ),
    Tier.ENTERPRISE: TierLimits(
        max_apps=UNLIMITED,
        ai_generations_per_month=UNLIMITED,
        workflow_executions_per_month=UNLIMITED,
        max_team_members=UNLIMITED,
        custom_domains=UNLIMITED,
        features=frozenset({
            "all_business_features",
            "custom_ai_models",
            "dedicated_support",
            "sso",
            "custom_integrations",
            "on_premise_deployment",
            "custom_sla",
            "dedicated_account_manager",
            "custom_training",
        }),
        price_cents=None,
    ),
}

# Burst limits per operation. "api" is per minute, "ai_generation" per hour.
RATE_LIMITS: Dict[str, Dict[Tier, RateLimit]] = {
    "api": {
        Tier.FREE: RateLimit(limit=60, window_seconds=RATE_WINDOW_MINUTE),
        Tier.BYOK: RateLimit(limit=120, window_seconds=RATE_WINDOW_MINUTE),
        Tier.PRO: RateLimit(limit=300, window_seconds=RATE_WINDOW_MINUTE),
        Tier.BUSINESS: RateLimit(limit=1000, window_seconds=RATE_WINDOW_MINUTE),
        Tier.ENTERPRISE: RateLimit(limit=UNLIMITED, window_seconds=RATE_WINDOW_MINUTE),
    },
    "ai_generation": {
        Tier.FREE: RateLimit(limit=10, window_seconds=RATE_WINDOW_HOUR),
        Tier.BYOK: RateLimit(limit=UNLIMITED, window_seconds=RATE_WINDOW_HOUR),
        Tier.PRO: RateLimit(limit=100, window_seconds=RATE_WINDOW_HOUR),
        Tier.BUSINESS: RateLimit(limit=500, window_seconds=RATE_WINDOW_HOUR),
        Tier.ENTERPRISE: RateLimit(limit=UNLIMITED, window_seconds=RATE_WINDOW_HOUR),
    },
}

FEATURE_DESCRIPTIONS: Dict[str, str] = {
    "basic_templates": "Access to basic application templates",
    "all_templates": "Access to all premium templates",
    "public_deployments": "Deploy apps publicly",
    "private_deployments": "Deploy apps with private access",
    "community_support": "Community forum support",
    "email_support": "Email support with 24-hour response",
    "priority_support": "Priority email and chat support",
    "dedicated_support": "Dedicated support team",
    "custom_domains": "Use custom domains for deployments",
    "github_sync": "Sync projects with GitHub repositories",
    "priority_generation": "Faster code generation queue",
    "white_label": "Remove branding and add your own",
    "team_collaboration": "Collaborate with team members",
    "n8n_workflows": "Advanced workflow automation with n8n",
    "sla": "Service level agreement with uptime guarantee",
    "sso": "Single sign-on integration",
    "custom_integrations": "Custom API integrations",
    "on_premise_deployment": "Deploy on your own infrastructure",
    "custom_ai_models": "Use custom or fine-tuned AI models",
    "own_api_keys": "Bring your own AI provider API keys",
    "byok_pricing": "Pay only for platform, use your own AI credits",
    "advanced_analytics": "Detailed analytics and insights",
    "basic_analytics": "Basic usage analytics",
    "advanced_security": "Advanced security features and compliance",
    "audit_logs": "Comprehensive audit logging",
    "api_access": "Programmatic API access",
    "custom_sla": "Custom service level agreement",
    "dedicated_account_manager": "Dedicated account manager",
    "custom_training": "Custom training and onboarding",
}

def parse_tier(value: Union[str, Tier]) -> Tier:
    """
    Coerce a tier name to a Tier.

    Raises:
        TierNotFoundError: if the name is not a known tier
    """
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).lower())
    except ValueError:
        raise TierNotFoundError(str(value)) from None


def get_tier_limits(tier: Union[str, Tier]) -> TierLimits:
    """Get tier limits for a specific tier."""
    return TIER_LIMITS[parse_tier(tier)]


def get_rate_limit(operation: str, tier: Union[str, Tier]) -> RateLimit:
    """Get the burst limit for an operation on a tier."""
    return RATE_LIMITS[operation][parse_tier(tier)]


def _inherited_features(tier: Tier) -> FrozenSet[str]:
    """
    Features pulled in through inheritance markers.

    Follows a marker to the referenced tier and that tier's own markers once
    more, so enterprise sees business and pro lists. Deeper chains are not
    followed.
    """
    inherited = set()
    for marker in TIER_LIMITS[tier].features:
        referenced = INHERITANCE_MARKERS.get(marker)
        if referenced is None:
            continue
        referenced_features = TIER_LIMITS[referenced].features
        inherited.update(referenced_features)
        for nested_marker in referenced_features:
            nested = INHERITANCE_MARKERS.get(nested_marker)
            if nested is not None:
                inherited.update(TIER_LIMITS[nested].features)
    return frozenset(inherited)


def has_feature(tier: Union[str, Tier], feature: str) -> bool:
    """Check if a feature is available in a tier, including inherited features."""
    tier = parse_tier(tier)
    if feature in TIER_LIMITS[tier].features:
        return True
    return feature in _inherited_features(tier)


def get_available_features(tier: Union[str, Tier]) -> List[str]:
    """Get all available features for a tier (including inherited), sorted."""
    tier = parse_tier(tier)
    return sorted(TIER_LIMITS[tier].features | _inherited_features(tier))


def is_unlimited(limit: int) -> bool:
    """Check if limit is the unlimited sentinel."""
    return limit == UNLIMITED


def tier_index(tier: Union[str, Tier]) -> int:
    """Position of a tier in the upgrade order."""
    return TIER_HIERARCHY.index(parse_tier(tier))


def is_upgrade(from_tier: Union[str, Tier], to_tier: Union[str, Tier]) -> bool:
    """Check if moving from one tier to another is an upgrade."""
    return tier_index(to_tier) > tier_index(from_tier)


def is_downgrade(from_tier: Union[str, Tier], to_tier: Union[str, Tier]) -> bool:
    """Check if moving from one tier to another is a downgrade."""
    return tier_index(to_tier) < tier_index(from_tier)


def next_tier(tier: Union[str, Tier]) -> Tier:
    """Next tier up the hierarchy, or the top tier if already there."""
    index = tier_index(tier)
    if index >= len(TIER_HIERARCHY) - 1:
        return TIER_HIERARCHY[-1]
    return TIER_HIERARCHY[index + 1]


__all__ = [
    "Tier",
    "TierLimits",
    "RateLimit",
    "TIER_HIERARCHY",
    "TIER_LIMITS",
    "RATE_LIMITS",
    "INHERITANCE_MARKERS",
    "FEATURE_DESCRIPTIONS",
    "parse_tier",
    "get_tier_limits",
    "get_rate_limit",
    "has_feature",
    "get_available_features",
    "is_unlimited",
    "tier_index",
    "is_upgrade",
    "is_downgrade",
    "next_tier",
]
