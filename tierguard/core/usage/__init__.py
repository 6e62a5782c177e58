"""
Usage enforcement and subscription management module.

Provides tier configuration, the subscription state machine, rate and monthly
quota enforcement, BYOK overrides, feature gating, usage warnings and the
durable usage ledger.
"""

from .tiers import (
    Tier,
    TierLimits,
    RateLimit,
    TIER_HIERARCHY,
    TIER_LIMITS,
    RATE_LIMITS,
    get_tier_limits,
    get_rate_limit,
    has_feature,
    get_available_features,
    is_unlimited,
    is_upgrade,
    is_downgrade,
    next_tier,
)
from .schemas import (
    SubscriptionStatus,
    UsageOperation,
    Subscription,
    UpgradeResult,
    IncrementResult,
    RateLimitResult,
    QuotaCheckResult,
    CheckResult,
    AIGenerationCheckResult,
    FeatureAccess,
    UsageMetric,
    UsageSummary,
    MonthlyUsage,
    ProviderKeys,
    SweepReport,
)
from .exceptions import (
    UsageTrackingError,
    QuotaExceededError,
    FeatureNotAvailableError,
    TierTransitionError,
    SubscriptionNotFoundError,
    TierNotFoundError,
    CounterBackendError,
    MissingProviderKeyError,
)
from .counters import (
    CounterStore,
    LocalCounterStore,
    RedisCounterStore,
    counter_key,
    get_counter_store,
)
from .subscription_store import SubscriptionStore, SqlSubscriptionStore, get_subscription_store
from .subscription_manager import SubscriptionManager, get_subscription_manager
from .subscription_checker import SubscriptionChecker, get_subscription_checker
from .usage_store import UsageStore, SqlUsageStore, get_usage_store
from .usage_recorder import UsageRecorder, get_usage_recorder
from .usage_queue import (
    UsageQueue,
    UsageEvent,
    get_usage_queue,
    enqueue_token_usage,
)
from .quota_enforcer import QuotaEnforcer, get_quota_enforcer
from .byok import BYOKOverride, KeyEncryptor, get_byok_override
from .feature_gate import FeatureGate, get_feature_gate
from .notifications import (
    NotificationChannel,
    LoggingNotificationChannel,
    RedisNotificationChannel,
    get_notification_channel,
)
from .warnings import WarningBroadcaster, get_warning_broadcaster
from .enforcement import EnforcementFacade, get_enforcement_facade
from .decorators import require_feature, enforce_quota, enforce_rate_limit

__all__ = [
    # Tiers
    "Tier",
    "TierLimits",
    "RateLimit",
    "TIER_HIERARCHY",
    "TIER_LIMITS",
    "RATE_LIMITS",
    "get_tier_limits",
    "get_rate_limit",
    "has_feature",
    "get_available_features",
    "is_unlimited",
    "is_upgrade",
    "is_downgrade",
    "next_tier",
    # Schemas
    "SubscriptionStatus",
    "UsageOperation",
    "Subscription",
    "UpgradeResult",
    "IncrementResult",
    "RateLimitResult",
    "QuotaCheckResult",
    "CheckResult",
    "AIGenerationCheckResult",
    "FeatureAccess",
    "UsageMetric",
    "UsageSummary",
    "MonthlyUsage",
    "ProviderKeys",
    "SweepReport",
    # Exceptions
    "UsageTrackingError",
    "QuotaExceededError",
    "FeatureNotAvailableError",
    "TierTransitionError",
    "SubscriptionNotFoundError",
    "TierNotFoundError",
    "CounterBackendError",
    "MissingProviderKeyError",
    # Counters
    "CounterStore",
    "LocalCounterStore",
    "RedisCounterStore",
    "counter_key",
    "get_counter_store",
    # Subscriptions
    "SubscriptionStore",
    "SqlSubscriptionStore",
    "get_subscription_store",
    "SubscriptionManager",
    "get_subscription_manager",
    "SubscriptionChecker",
    "get_subscription_checker",
    # Ledger
    "UsageStore",
    "SqlUsageStore",
    "get_usage_store",
    "UsageRecorder",
    "get_usage_recorder",
    "UsageQueue",
    "UsageEvent",
    "get_usage_queue",
    "enqueue_token_usage",
    # Enforcement
    "QuotaEnforcer",
    "get_quota_enforcer",
    "BYOKOverride",
    "KeyEncryptor",
    "get_byok_override",
    "FeatureGate",
    "get_feature_gate",
    "EnforcementFacade",
    "get_enforcement_facade",
    # Notifications
    "NotificationChannel",
    "LoggingNotificationChannel",
    "RedisNotificationChannel",
    "get_notification_channel",
    "WarningBroadcaster",
    "get_warning_broadcaster",
    # Decorators
    "require_feature",
    "enforce_quota",
    "enforce_rate_limit",
]
