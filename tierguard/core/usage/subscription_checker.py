"""
Periodic subscription sweeps.

Two independent jobs: expire subscriptions whose grace period has passed, and
apply scheduled tier changes that have come due. Both are safe to run
concurrently or redundantly: each record is re-read and its precondition
re-checked right before the transition, and one failing record never stops
the rest of the sweep.
"""

import logging
from typing import Optional

from .schemas import SubscriptionStatus, SweepReport
from .subscription_manager import SubscriptionManager, get_subscription_manager
from .subscription_store import SubscriptionStore, get_subscription_store

logger = logging.getLogger(__name__)


class SubscriptionChecker:
    """Runs the expire and renew sweeps over the subscription store."""

    def __init__(
        self,
        manager: Optional[SubscriptionManager] = None,
        store: Optional[SubscriptionStore] = None,
    ):
        self._manager = manager or get_subscription_manager()
        self._store = store or get_subscription_store()

    async def check_expired_subscriptions(self, report: Optional[SweepReport] = None) -> int:
        """
        Expire active subscriptions whose period ended more than the grace
        period ago.

        Returns:
            Number of subscriptions expired by this run
        """
        cutoff = self._manager.now() - self._manager.grace_period
        try:
            candidates = await self._store.find_expiring(cutoff)
        except Exception as e:
            logger.error(f"Expiry sweep could not load candidates: {e}")
            if report is not None:
                report.errors.append(f"expire:query: {e}")
            return 0
        expired = 0

        for candidate in candidates:
            try:
                current = await self._store.get_by_id(candidate.id)
                if (
                    current is None
                    or current.status != SubscriptionStatus.ACTIVE
                    or current.current_period_end is None
                    or current.current_period_end >= cutoff
                ):
                    logger.debug(f"Subscription {candidate.id} no longer due for expiry, skipping")
                    continue

                await self._manager.expire(current.id)
                expired += 1
            except Exception as e:
                logger.error(f"Failed to expire subscription {candidate.id}: {e}")
                if report is not None:
                    report.errors.append(f"expire:{candidate.id}: {e}")

        if candidates:
            logger.info(f"Expiry sweep: {expired} of {len(candidates)} candidates expired")
        return expired

    async def process_scheduled_tier_changes(self, report: Optional[SweepReport] = None) -> int:
        """
        Renew subscriptions whose scheduled tier change date has passed.

        Returns:
            Number of subscriptions renewed by this run
        """
        now = self._manager.now()
        try:
            candidates = await self._store.find_scheduled_changes(now)
        except Exception as e:
            logger.error(f"Scheduled change sweep could not load candidates: {e}")
            if report is not None:
                report.errors.append(f"renew:query: {e}")
            return 0
        renewed = 0

        for candidate in candidates:
            try:
                current = await self._store.get_by_id(candidate.id)
                if (
                    current is None
                    or current.scheduled_tier is None
                    or current.scheduled_change_date is None
                    or current.scheduled_change_date >= now
                ):
                    logger.debug(f"Subscription {candidate.id} has no due change, skipping")
                    continue

                await self._manager.renew(current.id)
                renewed += 1
            except Exception as e:
                logger.error(f"Failed to apply scheduled change for subscription {candidate.id}: {e}")
                if report is not None:
                    report.errors.append(f"renew:{candidate.id}: {e}")

        if candidates:
            logger.info(f"Scheduled change sweep: {renewed} of {len(candidates)} candidates renewed")
        return renewed

    async def run_scheduled_check(self) -> SweepReport:
        """Run both sweeps and report what they did."""
        report = SweepReport()
        report.renewed = await self.process_scheduled_tier_changes(report)
        report.expired = await self.check_expired_subscriptions(report)
        logger.info(
            f"Scheduled subscription check complete: renewed={report.renewed}, "
            f"expired={report.expired}, errors={len(report.errors)}"
        )
        return report


# Module-level instance for convenience
_subscription_checker: Optional[SubscriptionChecker] = None


def get_subscription_checker() -> SubscriptionChecker:
    """Get or create SubscriptionChecker instance."""
    global _subscription_checker
    if _subscription_checker is None:
        _subscription_checker = SubscriptionChecker()
    return _subscription_checker


__all__ = [
    "SubscriptionChecker",
    "get_subscription_checker",
]
