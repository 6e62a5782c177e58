"""
Durable usage ledger storage.

One ``usage_metrics`` row per user per day, plus the authoritative app count
from the ``apps`` table. The ledger is never consulted to gate a request.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy import text

from tierguard.db.connection import db
from tierguard.db.utils import row_to_dict, with_db_retry
from .schemas import UsageMetric

logger = logging.getLogger(__name__)

# Columns that may be incremented by name
COUNTER_COLUMNS = ("ai_generations", "apps_created", "workflow_executions", "tokens_used")


class UsageStore(ABC):
    """Read/upsert access to the per-day usage ledger."""

    @abstractmethod
    async def increment_daily(
        self,
        user_id: str,
        day: date,
        field: Optional[str] = None,
        amount: int = 0,
        tokens: int = 0,
        estimated_cost: float = 0.0,
    ) -> None:
        """Create the user's row for ``day`` if missing, then add to its counters."""

    @abstractmethod
    async def get_daily(self, user_id: str, day: date) -> Optional[UsageMetric]:
        ...

    @abstractmethod
    async def get_range(self, user_id: str, start: date, end: date) -> List[UsageMetric]:
        """Rows with start <= date <= end, oldest first."""

    @abstractmethod
    async def get_total_app_count(self, user_id: str) -> int:
        """Number of apps the user currently owns."""


class SqlUsageStore(UsageStore):
    """PostgreSQL usage ledger (usage_metrics, apps)."""

    async def increment_daily(
        self,
        user_id: str,
        day: date,
        field: Optional[str] = None,
        amount: int = 0,
        tokens: int = 0,
        estimated_cost: float = 0.0,
    ) -> None:
        if field is not None and field not in COUNTER_COLUMNS:
            raise ValueError(f"Unknown usage field: {field}")

        increments = {"tokens_used": tokens}
        if field is not None:
            increments[field] = increments.get(field, 0) + amount

        insert_values = {column: increments.get(column, 0) for column in COUNTER_COLUMNS}
        set_clause = ",\n".join(
            f"{column} = usage_metrics.{column} + EXCLUDED.{column}" for column in COUNTER_COLUMNS
        )

        async with db.session() as session:
            if session is None:
                logger.warning("Database disabled, skipping usage recording")
                return

            now = datetime.now(timezone.utc)
            await session.execute(
                text(f"""
                    INSERT INTO usage_metrics (
                        id, user_id, date,
                        ai_generations, apps_created, workflow_executions, tokens_used,
                        estimated_cost, created_at, updated_at
                    ) VALUES (
                        :id, :user_id, :date,
                        :ai_generations, :apps_created, :workflow_executions, :tokens_used,
                        :estimated_cost, :now, :now
                    )
                    ON CONFLICT (user_id, date) DO UPDATE SET
                        {set_clause},
                        estimated_cost = usage_metrics.estimated_cost + EXCLUDED.estimated_cost,
                        updated_at = EXCLUDED.updated_at
                """),
                {
                    "id": str(uuid.uuid4()),
                    "user_id": user_id,
                    "date": day.isoformat(),
                    "estimated_cost": estimated_cost,
                    "now": now,
                    **insert_values,
                },
            )

    @with_db_retry
    async def get_daily(self, user_id: str, day: date) -> Optional[UsageMetric]:
        async with db.session() as session:
            if session is None:
                return None

            result = await session.execute(
                text("""
                    SELECT user_id, date, ai_generations, tokens_used, apps_created,
                           workflow_executions, estimated_cost
                    FROM usage_metrics
                    WHERE user_id = :user_id AND date = :date
                """),
                {"user_id": user_id, "date": day.isoformat()},
            )
            data = row_to_dict(result.fetchone())
            return UsageMetric.model_validate(data) if data else None

    @with_db_retry
    async def get_range(self, user_id: str, start: date, end: date) -> List[UsageMetric]:
        async with db.session() as session:
            if session is None:
                return []

            result = await session.execute(
                text("""
                    SELECT user_id, date, ai_generations, tokens_used, apps_created,
                           workflow_executions, estimated_cost
                    FROM usage_metrics
                    WHERE user_id = :user_id AND date >= :start AND date <= :end
                    ORDER BY date ASC
                """),
                {"user_id": user_id, "start": start.isoformat(), "end": end.isoformat()},
            )
            return [UsageMetric.model_validate(row_to_dict(row)) for row in result.fetchall()]

    @with_db_retry
    async def get_total_app_count(self, user_id: str) -> int:
        async with db.session() as session:
            if session is None:
                return 0

            result = await session.execute(
                text("SELECT COUNT(*) FROM apps WHERE user_id = :user_id"),
                {"user_id": user_id},
            )
            return int(result.scalar() or 0)


# Module-level instance for convenience
_usage_store: Optional[UsageStore] = None


def get_usage_store() -> UsageStore:
    """Get or create the default UsageStore."""
    global _usage_store
    if _usage_store is None:
        _usage_store = SqlUsageStore()
    return _usage_store


__all__ = [
    "UsageStore",
    "SqlUsageStore",
    "COUNTER_COLUMNS",
    "get_usage_store",
]
