"""
EnforcementFacade - check/track pairs for every metered operation.

Callers run ``check_*`` before the metered action and ``track_*`` only after
it succeeded, so failed attempts never consume quota. This facade is the
single entry point request handlers use; it delegates to the focused
components:
- SubscriptionManager: effective tier
- BYOKOverride: AI quota bypass for users on their own keys
- QuotaEnforcer: rate and monthly layers
- UsageRecorder: durable ledger (queued)
- WarningBroadcaster: threshold warnings and snapshots (background)
"""

import asyncio
import logging
from typing import Coroutine, Optional, Set

from .byok import BYOKOverride, get_byok_override
from .exceptions import MissingProviderKeyError
from .quota_enforcer import QuotaEnforcer, get_quota_enforcer
from .schemas import AIGenerationCheckResult, CheckResult, MonthlyUsage, UsageOperation
from .subscription_manager import SubscriptionManager, get_subscription_manager
from .tiers import Tier, is_unlimited
from .usage_recorder import UsageRecorder, get_usage_recorder
from .warnings import WarningBroadcaster, get_warning_broadcaster

logger = logging.getLogger(__name__)

AI = UsageOperation.AI_GENERATION.value
APPS = UsageOperation.APP_CREATION.value
WORKFLOWS = UsageOperation.WORKFLOW_EXECUTION.value

# Snapshot field name per operation
SNAPSHOT_FIELDS = {
    AI: "ai_generations",
    APPS: "apps",
    WORKFLOWS: "workflows",
}


class EnforcementFacade:
    """
    Orchestrates tier enforcement for request handlers.

    All collaborators are injectable; defaults are the module singletons.
    """

    def __init__(
        self,
        subscriptions: Optional[SubscriptionManager] = None,
        quotas: Optional[QuotaEnforcer] = None,
        recorder: Optional[UsageRecorder] = None,
        byok: Optional[BYOKOverride] = None,
        warnings: Optional[WarningBroadcaster] = None,
    ):
        self._subscriptions = subscriptions or get_subscription_manager()
        self._quotas = quotas or get_quota_enforcer()
        self._recorder = recorder or get_usage_recorder()
        self._byok = byok or get_byok_override()
        self._warnings = warnings or get_warning_broadcaster()
        self._background: Set[asyncio.Task] = set()

    async def _tier(self, user_id: str) -> Tier:
        return await self._subscriptions.get_effective_tier(user_id)

    # =========================================================================
    # Checks (before the action)
    # =========================================================================

    async def check_ai_generation_allowed(
        self,
        user_id: str,
        provider: Optional[str] = None,
    ) -> AIGenerationCheckResult:
        """
        Check whether the user may run an AI generation.

        Active BYOK users are always allowed and flagged ``use_byok``.

        Args:
            user_id: User ID
            provider: Upstream provider the call will use; when given, a BYOK
                user must have credentials for it

        Raises:
            MissingProviderKeyError: BYOK user without a key for ``provider``
        """
        if await self._byok.should_use_user_keys(user_id):
            if provider:
                try:
                    await self._byok.require_provider_key(user_id, provider)
                except (MissingProviderKeyError, ValueError):
                    raise
                except Exception as e:
                    logger.error(f"Provider key lookup failed for BYOK user {user_id}: {e}")
            return AIGenerationCheckResult(allowed=True, use_byok=True)

        tier = await self._tier(user_id)
        result = await self._quotas.check(user_id, tier, AI)
        return AIGenerationCheckResult(allowed=result.allowed, error=result.error)

    async def check_app_creation_allowed(self, user_id: str) -> CheckResult:
        """Check the user's app count against max_apps."""
        tier = await self._tier(user_id)
        return await self._quotas.check(user_id, tier, APPS)

    async def check_workflow_execution_allowed(self, user_id: str) -> CheckResult:
        """Check whether the user may execute a workflow."""
        tier = await self._tier(user_id)
        return await self._quotas.check(user_id, tier, WORKFLOWS)

    # =========================================================================
    # Tracking (after the action succeeded) - never raises
    # =========================================================================

    async def track_ai_generation(
        self,
        user_id: str,
        tokens: int = 0,
        estimated_cost: float = 0.0,
    ) -> None:
        """Consume AI quota (skipped for BYOK), record usage, notify."""
        metadata = {"tokens": tokens, "estimated_cost": estimated_cost}
        try:
            if await self._byok.should_use_user_keys(user_id):
                metadata["byok"] = True
                self._recorder.record_async(user_id, AI, 1, metadata)
                self._schedule(self._push_snapshot(user_id))
                return

            await self._track(user_id, AI, metadata)
        except Exception as e:
            logger.error(f"Failed to track AI generation for user {user_id}: {e}")

    async def track_app_creation(self, user_id: str) -> None:
        """Record an app creation and notify."""
        try:
            await self._track(user_id, APPS, {})
        except Exception as e:
            logger.error(f"Failed to track app creation for user {user_id}: {e}")

    async def track_workflow_execution(self, user_id: str) -> None:
        """Consume workflow quota, record usage, notify."""
        try:
            await self._track(user_id, WORKFLOWS, {})
        except Exception as e:
            logger.error(f"Failed to track workflow execution for user {user_id}: {e}")

    async def _track(self, user_id: str, operation: str, metadata: dict) -> None:
        tier = await self._tier(user_id)
        monthly = await self._quotas.track(user_id, tier, operation)
        self._recorder.record_async(user_id, operation, 1, metadata)
        self._schedule(self._notify(user_id, tier, operation, monthly.current, monthly.limit))

    # =========================================================================
    # Notifications (background)
    # =========================================================================

    def _schedule(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify(self, user_id: str, tier: Tier, operation: str, current: int, limit: int) -> None:
        try:
            await self._warnings.check_and_warn(user_id, tier, operation, current, limit)
        except Exception as e:
            logger.error(f"Warning evaluation failed for user {user_id} ({operation}): {e}")
        await self._push_snapshot(user_id)

    async def _push_snapshot(self, user_id: str) -> None:
        try:
            snapshot = await self.get_usage_snapshot(user_id)
            await self._warnings.broadcast_usage_update(user_id, snapshot)
        except Exception as e:
            logger.error(f"Failed to push usage snapshot to user {user_id}: {e}")

    async def wait_for_background(self) -> None:
        """Wait for pending notification tasks (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # Snapshot
    # =========================================================================

    async def get_usage_snapshot(self, user_id: str) -> MonthlyUsage:
        """Current cycle usage, limits and percentages for every operation."""
        tier = await self._tier(user_id)
        usage, limits, percentages = {}, {}, {}

        for operation, name in SNAPSHOT_FIELDS.items():
            result = await self._quotas.check_monthly_quota(user_id, tier, operation)
            usage[name] = result.current
            limits[name] = result.limit
            percentages[name] = 0.0 if is_unlimited(result.limit) else round(result.percentage, 1)

        return MonthlyUsage(tier=tier, usage=usage, limits=limits, percentages=percentages)


# Module-level instance for convenience
_enforcement_facade: Optional[EnforcementFacade] = None


def get_enforcement_facade() -> EnforcementFacade:
    """Get or create EnforcementFacade instance."""
    global _enforcement_facade
    if _enforcement_facade is None:
        _enforcement_facade = EnforcementFacade()
    return _enforcement_facade


__all__ = [
    "EnforcementFacade",
    "get_enforcement_facade",
]
