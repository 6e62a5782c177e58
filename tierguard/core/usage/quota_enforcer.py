"""
Quota enforcement with two composed layers.

- Rate layer: short fixed windows from RATE_LIMITS, smoothing bursts.
- Monthly layer: absolute ceilings per billing cycle. AI generations and
  workflow executions use counters; app creation counts rows in the apps
  table so deletions are reflected.

An operation is allowed only if both layers allow it. Every backend call is
bounded by a timeout, and an unreachable backend resolves to allowed=True
with an error log: availability wins over strict enforcement.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from tierguard.config import get_settings
from .counters import CounterStore, counter_key, get_counter_store
from .exceptions import QuotaExceededError
from .schemas import CheckResult, QuotaCheckResult, RateLimitResult, UsageOperation
from .tiers import (
    RATE_LIMITS,
    TIER_HIERARCHY,
    Tier,
    get_tier_limits,
    is_unlimited,
    next_tier,
)
from .usage_store import UsageStore, get_usage_store

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_SCOPE = "rate"
MONTHLY_SCOPE = "monthly"


def monthly_limit_for(tier: Tier, operation: str) -> int:
    """Monthly ceiling of an operation on a tier."""
    limits = get_tier_limits(tier)
    if operation == UsageOperation.AI_GENERATION.value:
        return limits.ai_generations_per_month
    if operation == UsageOperation.WORKFLOW_EXECUTION.value:
        return limits.workflow_executions_per_month
    if operation == UsageOperation.APP_CREATION.value:
        return limits.max_apps
    raise ValueError(f"Unknown operation: {operation}")


def _upgrade_tier(tier: Tier) -> Optional[str]:
    if tier == TIER_HIERARCHY[-1]:
        return None
    return next_tier(tier).value


class QuotaEnforcer:
    """
    Checks and consumes rate limits and monthly quotas.

    Counter and ledger handles are passed in so tests can substitute fakes.
    """

    def __init__(
        self,
        counters: Optional[CounterStore] = None,
        usage_store: Optional[UsageStore] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize QuotaEnforcer.

        Args:
            counters: Counter backend (default: configured backend)
            usage_store: Source of the authoritative app count
            timeout_seconds: Upper bound for each backend call
        """
        self._counters = counters or get_counter_store()
        self._usage_store = usage_store or get_usage_store()
        settings = get_settings()
        self._timeout = settings.backend_timeout_seconds if timeout_seconds is None else timeout_seconds
        self._monthly_window = settings.billing_cycle_seconds

    async def _bounded(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self._timeout)

    # =========================================================================
    # Rate layer
    # =========================================================================

    def _rate_error(self, tier: Tier, operation: str, limit: int, window: int) -> QuotaExceededError:
        return QuotaExceededError(
            operation=operation,
            current=limit,
            limit=limit,
            tier=tier.value,
            message=f"Rate limit exceeded for {operation.replace('_', ' ')}: "
                    f"{limit:,} per {window} seconds",
            window_seconds=window,
            suggestions=[
                f"Wait up to {window} seconds before retrying",
                "Upgrade your plan for higher rate limits",
            ],
            upgrade_tier=_upgrade_tier(tier),
        )

    async def check_rate_limit(self, user_id: str, tier: Tier, operation: str) -> RateLimitResult:
        """Read-only check of the burst window (nothing is consumed)."""
        policy = RATE_LIMITS.get(operation, {}).get(tier)
        if policy is None or is_unlimited(policy.limit):
            return RateLimitResult(allowed=True, remaining=-1, limit=-1, window_seconds=0)

        key = counter_key(RATE_SCOPE, operation, user_id)
        try:
            remaining = await self._bounded(
                self._counters.get_remaining_limit(key, policy.limit, policy.window_seconds)
            )
        except Exception as e:
            logger.error(f"Rate limit check failed for user {user_id} ({operation}), allowing: {e!r}")
            return RateLimitResult(
                allowed=True,
                remaining=policy.limit,
                limit=policy.limit,
                window_seconds=policy.window_seconds,
            )

        if remaining > 0:
            return RateLimitResult(
                allowed=True,
                remaining=remaining,
                limit=policy.limit,
                window_seconds=policy.window_seconds,
            )

        return RateLimitResult(
            allowed=False,
            remaining=0,
            limit=policy.limit,
            window_seconds=policy.window_seconds,
            error=self._rate_error(tier, operation, policy.limit, policy.window_seconds),
        )

    async def consume_rate_limit(
        self,
        user_id: str,
        tier: Tier,
        operation: str,
        amount: int = 1,
    ) -> RateLimitResult:
        """Atomically take ``amount`` units from the burst window."""
        policy = RATE_LIMITS.get(operation, {}).get(tier)
        if policy is None or is_unlimited(policy.limit):
            return RateLimitResult(allowed=True, remaining=-1, limit=-1, window_seconds=0)

        key = counter_key(RATE_SCOPE, operation, user_id)
        try:
            result = await self._bounded(
                self._counters.increment(key, policy.limit, policy.window_seconds, amount)
            )
        except Exception as e:
            logger.error(f"Rate limit increment failed for user {user_id} ({operation}), allowing: {e!r}")
            return RateLimitResult(
                allowed=True,
                remaining=policy.limit,
                limit=policy.limit,
                window_seconds=policy.window_seconds,
            )

        return RateLimitResult(
            allowed=result.success,
            remaining=result.remaining,
            limit=policy.limit,
            window_seconds=policy.window_seconds,
            error=None if result.success else self._rate_error(
                tier, operation, policy.limit, policy.window_seconds
            ),
        )

    async def reset_rate_limit(self, user_id: str, operation: str) -> None:
        """Clear the burst window for an operation."""
        key = counter_key(RATE_SCOPE, operation, user_id)
        await self._bounded(self._counters.reset_limit(key))
        logger.info(f"Reset rate limit {key}")

    # =========================================================================
    # Monthly layer
    # =========================================================================

    def _monthly_error(self, tier: Tier, operation: str, current: int, limit: int) -> QuotaExceededError:
        upgrade = _upgrade_tier(tier)
        suggestions = []
        if upgrade:
            suggestions.append(f"Upgrade to {upgrade.title()} for higher monthly limits")
        if operation == UsageOperation.APP_CREATION.value:
            suggestions.append("Delete unused apps to free up slots")
        else:
            suggestions.append("Wait for your quota to reset at the next billing cycle")

        if limit == 0:
            message = f"{operation.replace('_', ' ').capitalize()} is not included in the {tier.value} plan"
        else:
            message = None

        return QuotaExceededError(
            operation=operation,
            current=current,
            limit=limit,
            tier=tier.value,
            message=message,
            window_seconds=None if operation == UsageOperation.APP_CREATION.value else self._monthly_window,
            suggestions=suggestions,
            upgrade_tier=upgrade,
        )

    def _not_in_plan(self, tier: Tier, operation: str) -> QuotaCheckResult:
        return QuotaCheckResult(
            allowed=False,
            current=0,
            limit=0,
            remaining=0,
            error=self._monthly_error(tier, operation, 0, 0),
        )

    async def check_monthly_quota(self, user_id: str, tier: Tier, operation: str) -> QuotaCheckResult:
        """
        Read-only check of the monthly ceiling.

        A zero limit means the operation is not in the plan; it is denied
        without consulting any backend.
        """
        limit = monthly_limit_for(tier, operation)
        if is_unlimited(limit):
            return QuotaCheckResult(allowed=True, current=0, limit=limit, remaining=-1)
        if limit == 0:
            return self._not_in_plan(tier, operation)

        try:
            if operation == UsageOperation.APP_CREATION.value:
                current = await self._bounded(self._usage_store.get_total_app_count(user_id))
            else:
                key = counter_key(MONTHLY_SCOPE, operation, user_id)
                remaining = await self._bounded(
                    self._counters.get_remaining_limit(key, limit, self._monthly_window)
                )
                current = max(0, limit - remaining)
        except Exception as e:
            logger.error(f"Monthly quota check failed for user {user_id} ({operation}), allowing: {e!r}")
            return QuotaCheckResult(allowed=True, current=0, limit=limit, remaining=limit)

        remaining = max(0, limit - current)
        if current < limit:
            return QuotaCheckResult(allowed=True, current=current, limit=limit, remaining=remaining)

        return QuotaCheckResult(
            allowed=False,
            current=current,
            limit=limit,
            remaining=0,
            error=self._monthly_error(tier, operation, current, limit),
        )

    async def consume_monthly_quota(
        self,
        user_id: str,
        tier: Tier,
        operation: str,
        amount: int = 1,
    ) -> QuotaCheckResult:
        """
        Record ``amount`` units against the monthly ceiling.

        App creation has no counter: the new row is already in the apps
        table, so this re-reads the count for the warning evaluation.
        """
        limit = monthly_limit_for(tier, operation)
        if is_unlimited(limit):
            return QuotaCheckResult(allowed=True, current=0, limit=limit, remaining=-1)
        if limit == 0:
            return self._not_in_plan(tier, operation)

        if operation == UsageOperation.APP_CREATION.value:
            try:
                current = await self._bounded(self._usage_store.get_total_app_count(user_id))
            except Exception as e:
                logger.error(f"App count failed for user {user_id}: {e!r}")
                return QuotaCheckResult(allowed=True, current=0, limit=limit, remaining=limit)
            return QuotaCheckResult(
                allowed=current <= limit,
                current=current,
                limit=limit,
                remaining=max(0, limit - current),
            )

        key = counter_key(MONTHLY_SCOPE, operation, user_id)
        try:
            result = await self._bounded(
                self._counters.increment(key, limit, self._monthly_window, amount)
            )
        except Exception as e:
            logger.error(f"Monthly quota increment failed for user {user_id} ({operation}), allowing: {e!r}")
            return QuotaCheckResult(allowed=True, current=0, limit=limit, remaining=limit)

        current = limit - result.remaining
        return QuotaCheckResult(
            allowed=result.success,
            current=current,
            limit=limit,
            remaining=result.remaining,
            error=None if result.success else self._monthly_error(tier, operation, current, limit),
        )

    async def reset_monthly_quota(self, user_id: str, operation: str) -> None:
        """Clear the monthly counter for an operation."""
        key = counter_key(MONTHLY_SCOPE, operation, user_id)
        await self._bounded(self._counters.reset_limit(key))
        logger.info(f"Reset monthly quota {key}")

    # =========================================================================
    # Composition
    # =========================================================================

    async def check(self, user_id: str, tier: Tier, operation: str) -> CheckResult:
        """Allowed only if both the rate and the monthly layer allow."""
        rate = await self.check_rate_limit(user_id, tier, operation)
        if not rate.allowed:
            return CheckResult(allowed=False, error=rate.error)

        monthly = await self.check_monthly_quota(user_id, tier, operation)
        if not monthly.allowed:
            return CheckResult(allowed=False, error=monthly.error)

        return CheckResult(allowed=True)

    async def track(
        self,
        user_id: str,
        tier: Tier,
        operation: str,
        amount: int = 1,
    ) -> QuotaCheckResult:
        """
        Consume both layers after the operation succeeded.

        A rejected increment here means a concurrent request took the last
        unit between check and track; the counter stays at its ceiling.

        Returns:
            The monthly layer result, used for warning evaluation
        """
        rate = await self.consume_rate_limit(user_id, tier, operation, amount)
        if not rate.allowed:
            logger.info(f"Rate window for user {user_id} ({operation}) already full at track time")

        monthly = await self.consume_monthly_quota(user_id, tier, operation, amount)
        if not monthly.allowed:
            logger.info(f"Monthly quota for user {user_id} ({operation}) already full at track time")
        return monthly


# Singleton instance
_quota_enforcer: Optional[QuotaEnforcer] = None


def get_quota_enforcer() -> QuotaEnforcer:
    """
    Get singleton QuotaEnforcer instance.

    Returns:
        QuotaEnforcer singleton
    """
    global _quota_enforcer
    if _quota_enforcer is None:
        _quota_enforcer = QuotaEnforcer()
    return _quota_enforcer


__all__ = [
    "QuotaEnforcer",
    "get_quota_enforcer",
    "monthly_limit_for",
    "RATE_SCOPE",
    "MONTHLY_SCOPE",
]
