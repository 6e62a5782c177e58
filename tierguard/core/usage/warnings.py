"""
Threshold-based usage warnings and real-time snapshot pushes.

Usage is bucketed into three disjoint bands, [70, 90), [90, 100) and
[100, inf). Each band fires at most once per billing cycle per (user,
operation), enforced by a set-if-absent marker with a cycle-length TTL, so
usage oscillating around a threshold does not repeat the notification.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from tierguard.config import get_settings
from tierguard.constants import WARNING_THRESHOLDS
from .notifications import (
    NotificationChannel,
    WarningMarkStore,
    get_notification_channel,
    get_warning_mark_store,
)
from .schemas import MonthlyUsage
from .tiers import Tier, is_unlimited, next_tier

logger = logging.getLogger(__name__)

EXCEEDED_THRESHOLD = 100


def warning_key(user_id: str, operation: str, threshold: int) -> str:
    """Dedup marker key for one warning band."""
    return f"warning:{user_id}:{operation}:{threshold}"


def threshold_for(percentage: float) -> Optional[int]:
    """Highest threshold reached by a usage percentage, or None below the first."""
    reached = [t for t in WARNING_THRESHOLDS if percentage >= t]
    return max(reached) if reached else None


class WarningBroadcaster:
    """Sends deduplicated limit warnings and usage snapshots to users."""

    def __init__(
        self,
        channel: Optional[NotificationChannel] = None,
        marks: Optional[WarningMarkStore] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Args:
            channel: Outbound push channel
            marks: Dedup marker store
            timeout_seconds: Upper bound for each mark write and push
        """
        self._channel = channel or get_notification_channel()
        self._marks = marks or get_warning_mark_store()
        settings = get_settings()
        self._timeout = settings.notification_timeout_seconds if timeout_seconds is None else timeout_seconds
        self._mark_ttl = settings.billing_cycle_seconds

    async def _push(self, user_id: str, message: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(self._channel.publish(user_id, message), timeout=self._timeout)
            return True
        except Exception as e:
            logger.error(f"Failed to push {message.get('type')} to user {user_id}: {e!r}")
            return False

    async def check_and_warn(
        self,
        user_id: str,
        tier: Tier,
        operation: str,
        current: int,
        limit: int,
    ) -> Optional[int]:
        """
        Send the warning for the band that usage is in, once per cycle.

        Args:
            user_id: User ID
            tier: User's tier (for the upgrade suggestion)
            operation: Metered operation
            current: Units used this cycle
            limit: Cycle ceiling

        Returns:
            The threshold that fired, or None if nothing was sent
        """
        if is_unlimited(limit) or limit <= 0:
            return None

        percentage = current / limit * 100
        threshold = threshold_for(percentage)
        if threshold is None:
            return None

        try:
            first_time = await asyncio.wait_for(
                self._marks.set_if_absent(
                    warning_key(user_id, operation, threshold), self._mark_ttl
                ),
                timeout=self._timeout,
            )
        except Exception as e:
            logger.error(f"Warning mark write failed for user {user_id} ({operation}): {e!r}")
            return None

        if not first_time:
            return None

        if threshold >= EXCEEDED_THRESHOLD:
            message = {
                "type": "limit_exceeded",
                "operation": operation,
                "current_tier": tier.value,
                "suggested_tier": next_tier(tier).value,
                "limit": limit,
            }
        else:
            message = {
                "type": "limit_warning",
                "operation": operation,
                "percentage": round(percentage, 1),
                "remaining": max(0, limit - current),
                "limit": limit,
                "threshold": threshold,
            }

        logger.info(f"User {user_id} reached {threshold}% of {operation} limit ({current}/{limit})")
        await self._push(user_id, message)
        return threshold

    async def broadcast_usage_update(self, user_id: str, snapshot: MonthlyUsage) -> bool:
        """Push a usage snapshot to the user. Returns False if delivery failed."""
        return await self._push(user_id, snapshot.to_message())


# Module-level instance for convenience
_warning_broadcaster: Optional[WarningBroadcaster] = None


def get_warning_broadcaster() -> WarningBroadcaster:
    """Get or create WarningBroadcaster instance."""
    global _warning_broadcaster
    if _warning_broadcaster is None:
        _warning_broadcaster = WarningBroadcaster()
    return _warning_broadcaster


__all__ = [
    "WarningBroadcaster",
    "get_warning_broadcaster",
    "warning_key",
    "threshold_for",
]
