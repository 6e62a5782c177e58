"""
Pydantic schemas for subscriptions, enforcement results and usage records.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import QuotaExceededError
from .tiers import Tier


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAST_DUE = "past_due"


class UsageOperation(str, Enum):
    """Metered operations with a monthly quota."""
    AI_GENERATION = "ai_generation"
    APP_CREATION = "app_creation"
    WORKFLOW_EXECUTION = "workflow_execution"


# usage_metrics column incremented by each operation
LEDGER_FIELDS: Dict[str, str] = {
    UsageOperation.AI_GENERATION.value: "ai_generations",
    UsageOperation.APP_CREATION.value: "apps_created",
    UsageOperation.WORKFLOW_EXECUTION.value: "workflow_executions",
}


class Subscription(BaseModel):
    """The one authoritative subscription record for a user."""

    id: str
    user_id: str
    tier: Tier
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime
    current_period_end: Optional[datetime] = None  # None for free
    auto_renew: bool = False
    scheduled_tier: Optional[Tier] = None
    scheduled_change_date: Optional[datetime] = None
    amount_paid_cents: int = 0
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _schedule_set_together(self) -> "Subscription":
        if (self.scheduled_tier is None) != (self.scheduled_change_date is None):
            raise ValueError("scheduled_tier and scheduled_change_date must be set together")
        return self

    @property
    def amount_paid(self) -> float:
        """Amount paid in dollars for display."""
        return self.amount_paid_cents / 100

    @property
    def has_scheduled_change(self) -> bool:
        return self.scheduled_tier is not None


class UpgradeResult(BaseModel):
    """Outcome of an upgrade: the updated subscription and the prorated charge."""

    subscription: Subscription
    prorated_amount_cents: int

    @property
    def prorated_amount(self) -> float:
        """Prorated charge in dollars."""
        return self.prorated_amount_cents / 100


class IncrementResult(BaseModel):
    """Result of an atomic increment-with-ceiling on one counter key."""
    success: bool
    remaining: int


class RateLimitResult(BaseModel):
    """Result of a burst rate-limit check or consumption."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    allowed: bool
    remaining: int
    limit: int
    window_seconds: int
    error: Optional[QuotaExceededError] = None


class QuotaCheckResult(BaseModel):
    """Result of a monthly quota check or consumption."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    allowed: bool
    current: int
    limit: int
    remaining: int
    error: Optional[QuotaExceededError] = None

    @property
    def percentage(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.current / self.limit * 100


class CheckResult(BaseModel):
    """Pre-action check returned by the enforcement facade."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    allowed: bool
    error: Optional[QuotaExceededError] = None


class AIGenerationCheckResult(CheckResult):
    """Pre-action check for AI generations, flags BYOK routing."""
    use_byok: bool = False


class FeatureAccess(BaseModel):
    """Detailed answer to a feature-access query."""
    allowed: bool
    tier: Tier
    reason: Optional[str] = None


class UsageMetric(BaseModel):
    """One user's durable usage for one day (usage_metrics row)."""
    user_id: str
    date: str  # YYYY-MM-DD
    ai_generations: int = 0
    tokens_used: int = 0
    apps_created: int = 0
    workflow_executions: int = 0
    estimated_cost: float = 0.0

    @field_validator("date", mode="before")
    @classmethod
    def _date_to_str(cls, value: Any) -> Any:
        if hasattr(value, "isoformat"):
            return value.isoformat()
        return value


class UsageSummary(BaseModel):
    """Usage totals over a date range."""
    ai_generations: int = 0
    tokens_used: int = 0
    apps_created: int = 0
    workflow_executions: int = 0
    estimated_cost: float = 0.0


class MonthlyUsage(BaseModel):
    """Real-time usage snapshot pushed to the user's notification channel."""
    tier: Tier
    usage: Dict[str, int]
    limits: Dict[str, int]
    percentages: Dict[str, float]

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "usage_updated",
            "usage": self.usage,
            "limits": self.limits,
            "percentages": self.percentages,
        }


class ProviderKeys(BaseModel):
    """Upstream AI provider credentials supplied by a BYOK user."""
    openai: Optional[str] = None
    anthropic: Optional[str] = None
    google: Optional[str] = None

    def has(self, provider: str) -> bool:
        return bool(getattr(self, provider, None))

    @property
    def configured_providers(self) -> List[str]:
        return [name for name, value in self.model_dump().items() if value]


class SweepReport(BaseModel):
    """Counts produced by one scheduled subscription check."""
    expired: int = 0
    renewed: int = 0
    errors: List[str] = Field(default_factory=list)


__all__ = [
    "SubscriptionStatus",
    "UsageOperation",
    "LEDGER_FIELDS",
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
]
