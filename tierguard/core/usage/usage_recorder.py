"""
UsageRecorder - durable, non-gating usage ledger.

Single responsibility: record consumption per user per day and forward each
record to the analytics sink. Nothing here is consulted on the enforcement
path, and no failure here ever reaches the caller of a metered action.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from tierguard.config import get_settings
from .schemas import LEDGER_FIELDS, UsageMetric, UsageSummary
from .usage_store import UsageStore, get_usage_store

logger = logging.getLogger(__name__)


class AnalyticsSink(Protocol):
    """Destination for per-action analytics events."""

    async def write(self, event: Dict[str, Any]) -> None:
        ...


class LoggingAnalyticsSink:
    """Analytics sink that emits events to the log at debug level."""

    async def write(self, event: Dict[str, Any]) -> None:
        logger.debug(f"analytics event: {event}")


def _today() -> date:
    return datetime.now(timezone.utc).date()


class UsageRecorder:
    """
    Records usage to the daily ledger and the analytics sink.

    Responsibilities:
    - Increment today's row for each metered action
    - Forward analytics events (tagged with byok where applicable)
    - Answer day / range / rolling-month / history queries
    - Report the authoritative app count
    """

    def __init__(
        self,
        store: Optional[UsageStore] = None,
        analytics_sink: Optional[AnalyticsSink] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self._store = store or get_usage_store()
        self._sink = analytics_sink or LoggingAnalyticsSink()
        self._today = today or _today
        self._cycle_days = get_settings().billing_cycle_days

    async def record(
        self,
        user_id: str,
        operation: str,
        amount: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record a metered action. Errors are logged and swallowed.

        Args:
            user_id: User ID
            operation: 'ai_generation', 'app_creation' or 'workflow_execution'
            amount: Units consumed
            metadata: Extra fields for the analytics event (e.g. byok=True)
        """
        metadata = metadata or {}
        try:
            field = LEDGER_FIELDS.get(operation)
            if field is None:
                logger.warning(f"Unknown operation '{operation}', skipping ledger update")
            else:
                await self._store.increment_daily(
                    user_id,
                    self._today(),
                    field=field,
                    amount=amount,
                    tokens=int(metadata.get("tokens", 0) or 0),
                    estimated_cost=float(metadata.get("estimated_cost", 0) or 0),
                )
        except Exception as e:
            logger.error(f"Failed to record {operation} usage for user {user_id}: {e}")

        await self._forward(user_id, operation, amount, metadata)

    async def _forward(
        self,
        user_id: str,
        operation: str,
        amount: int,
        metadata: Dict[str, Any],
    ) -> None:
        try:
            await self._sink.write({
                "user_id": user_id,
                "operation": operation,
                "amount": amount,
                "byok": bool(metadata.get("byok", False)),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **{k: v for k, v in metadata.items() if k != "byok"},
            })
        except Exception as e:
            logger.warning(f"Failed to forward analytics for user {user_id}: {e}")

    def record_async(
        self,
        user_id: str,
        operation: str,
        amount: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Queue a record() call on the background usage queue."""
        from .usage_queue import UsageEvent, get_usage_queue

        try:
            get_usage_queue().enqueue(UsageEvent(
                event_type="usage",
                user_id=user_id,
                operation=operation,
                amount=amount,
                metadata=metadata,
                recorder=self,
            ))
        except Exception as e:
            logger.warning(f"Failed to enqueue usage for user {user_id}: {e}")

    async def track_token_usage(
        self,
        user_id: str,
        tokens: int,
        estimated_cost: float = 0.0,
    ) -> None:
        """Add tokens and cost to today's row without counting an action."""
        if tokens <= 0 and estimated_cost <= 0:
            return
        try:
            await self._store.increment_daily(
                user_id,
                self._today(),
                tokens=tokens,
                estimated_cost=estimated_cost,
            )
        except Exception as e:
            logger.error(f"Failed to record token usage for user {user_id}: {e}")

    # =========================================================================
    # Queries (zeroed results on failure)
    # =========================================================================

    async def get_current_usage(self, user_id: str) -> UsageMetric:
        """Today's usage row."""
        today = self._today()
        try:
            metric = await self._store.get_daily(user_id, today)
        except Exception as e:
            logger.error(f"Failed to get current usage for user {user_id}: {e}")
            metric = None
        return metric or UsageMetric(user_id=user_id, date=today.isoformat())

    async def get_usage_for_date_range(self, user_id: str, start: date, end: date) -> UsageSummary:
        """Totals for start <= day <= end."""
        try:
            rows = await self._store.get_range(user_id, start, end)
        except Exception as e:
            logger.error(f"Failed to get usage range for user {user_id}: {e}")
            return UsageSummary()
        return _summarize(rows)

    async def get_monthly_usage(self, user_id: str) -> UsageSummary:
        """Totals over the rolling billing cycle ending today."""
        today = self._today()
        return await self.get_usage_for_date_range(
            user_id, today - timedelta(days=self._cycle_days - 1), today
        )

    async def get_usage_history(self, user_id: str, days: int = 30) -> List[UsageMetric]:
        """One row per day for the last ``days`` days, zero-filled, oldest first."""
        today = self._today()
        start = today - timedelta(days=max(1, days) - 1)
        try:
            rows = await self._store.get_range(user_id, start, today)
        except Exception as e:
            logger.error(f"Failed to get usage history for user {user_id}: {e}")
            rows = []

        by_date = {row.date: row for row in rows}
        history = []
        for offset in range((today - start).days + 1):
            day = (start + timedelta(days=offset)).isoformat()
            history.append(by_date.get(day) or UsageMetric(user_id=user_id, date=day))
        return history

    async def get_total_app_count(self, user_id: str) -> int:
        """Apps the user currently owns (0 on failure)."""
        try:
            return await self._store.get_total_app_count(user_id)
        except Exception as e:
            logger.error(f"Failed to count apps for user {user_id}: {e}")
            return 0


def _summarize(rows: List[UsageMetric]) -> UsageSummary:
    summary = UsageSummary()
    for row in rows:
        summary.ai_generations += row.ai_generations
        summary.tokens_used += row.tokens_used
        summary.apps_created += row.apps_created
        summary.workflow_executions += row.workflow_executions
        summary.estimated_cost += row.estimated_cost
    return summary


# Module-level instance for convenience
_usage_recorder: Optional[UsageRecorder] = None


def get_usage_recorder() -> UsageRecorder:
    """Get or create UsageRecorder instance."""
    global _usage_recorder
    if _usage_recorder is None:
        _usage_recorder = UsageRecorder()
    return _usage_recorder


__all__ = [
    "AnalyticsSink",
    "LoggingAnalyticsSink",
    "UsageRecorder",
    "get_usage_recorder",
]
