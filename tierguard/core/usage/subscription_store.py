"""
Subscription persistence.

SubscriptionStore is the narrow interface the lifecycle manager and sweeps
depend on; SqlSubscriptionStore implements it against the externally owned
``subscriptions`` table (one row per user).
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import text

from tierguard.db.connection import db
from tierguard.db.utils import row_to_dict, with_db_retry
from .schemas import Subscription

logger = logging.getLogger(__name__)

_COLUMNS = """
    id::text AS id,
    user_id,
    tier,
    status,
    current_period_start,
    current_period_end,
    auto_renew,
    scheduled_tier,
    scheduled_change_date,
    amount_paid_cents,
    cancelled_at,
    cancellation_reason,
    created_at,
    updated_at
"""


class SubscriptionStore(ABC):
    """Read/insert/update access to subscription records."""

    @abstractmethod
    async def get_by_user_id(self, user_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    async def insert(self, subscription: Subscription) -> Subscription:
        ...

    @abstractmethod
    async def update(self, subscription: Subscription) -> Subscription:
        ...

    @abstractmethod
    async def find_expiring(self, cutoff: datetime) -> List[Subscription]:
        """Active subscriptions whose period ended before ``cutoff``."""

    @abstractmethod
    async def find_scheduled_changes(self, now: datetime) -> List[Subscription]:
        """Subscriptions with a scheduled tier change due before ``now``."""


class SqlSubscriptionStore(SubscriptionStore):
    """
    PostgreSQL-backed subscription store.

    Reads are retried on transient errors. A disabled database behaves as an
    empty table for reads; writes raise, since a lifecycle change that cannot
    be persisted must not look successful.
    """

    @with_db_retry
    async def get_by_user_id(self, user_id: str) -> Optional[Subscription]:
        async with db.session() as session:
            if session is None:
                logger.warning("Database disabled, returning None")
                return None

            result = await session.execute(
                text(f"SELECT {_COLUMNS} FROM subscriptions WHERE user_id = :user_id"),
                {"user_id": user_id},
            )
            return _to_subscription(result.fetchone())

    @with_db_retry
    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        async with db.session() as session:
            if session is None:
                logger.warning("Database disabled, returning None")
                return None

            result = await session.execute(
                text(f"SELECT {_COLUMNS} FROM subscriptions WHERE id::text = :id"),
                {"id": subscription_id},
            )
            return _to_subscription(result.fetchone())

    async def insert(self, subscription: Subscription) -> Subscription:
        async with db.session() as session:
            if session is None:
                raise RuntimeError("Database disabled, cannot create subscription")

            await session.execute(
                text("""
                    INSERT INTO subscriptions (
                        id, user_id, tier, status,
                        current_period_start, current_period_end, auto_renew,
                        scheduled_tier, scheduled_change_date, amount_paid_cents,
                        cancelled_at, cancellation_reason, created_at, updated_at
                    ) VALUES (
                        :id, :user_id, :tier, :status,
                        :current_period_start, :current_period_end, :auto_renew,
                        :scheduled_tier, :scheduled_change_date, :amount_paid_cents,
                        :cancelled_at, :cancellation_reason, :created_at, :updated_at
                    )
                """),
                _to_params(subscription),
            )

        logger.info(f"Inserted {subscription.tier.value} subscription for user {subscription.user_id}")
        return subscription

    async def update(self, subscription: Subscription) -> Subscription:
        async with db.session() as session:
            if session is None:
                raise RuntimeError("Database disabled, cannot update subscription")

            await session.execute(
                text("""
                    UPDATE subscriptions
                    SET
                        tier = :tier,
                        status = :status,
                        current_period_start = :current_period_start,
                        current_period_end = :current_period_end,
                        auto_renew = :auto_renew,
                        scheduled_tier = :scheduled_tier,
                        scheduled_change_date = :scheduled_change_date,
                        amount_paid_cents = :amount_paid_cents,
                        cancelled_at = :cancelled_at,
                        cancellation_reason = :cancellation_reason,
                        updated_at = :updated_at
                    WHERE id::text = :id
                """),
                _to_params(subscription),
            )

        return subscription

    @with_db_retry
    async def find_expiring(self, cutoff: datetime) -> List[Subscription]:
        async with db.session() as session:
            if session is None:
                return []

            result = await session.execute(
                text(f"""
                    SELECT {_COLUMNS} FROM subscriptions
                    WHERE status = 'active'
                      AND current_period_end IS NOT NULL
                      AND current_period_end < :cutoff
                """),
                {"cutoff": cutoff},
            )
            return _to_subscriptions(result.fetchall())

    @with_db_retry
    async def find_scheduled_changes(self, now: datetime) -> List[Subscription]:
        async with db.session() as session:
            if session is None:
                return []

            result = await session.execute(
                text(f"""
                    SELECT {_COLUMNS} FROM subscriptions
                    WHERE scheduled_tier IS NOT NULL
                      AND scheduled_change_date < :now
                """),
                {"now": now},
            )
            return _to_subscriptions(result.fetchall())


def _to_subscription(row) -> Optional[Subscription]:
    data = row_to_dict(row)
    if data is None:
        return None
    return Subscription.model_validate(data)


def _to_subscriptions(rows) -> List[Subscription]:
    """Map sweep rows, skipping any row that fails validation."""
    subscriptions = []
    for row in rows:
        try:
            subscription = _to_subscription(row)
        except ValidationError as e:
            row_id = getattr(row, "_mapping", {}).get("id")
            logger.error(f"Skipping unreadable subscription row {row_id}: {e}")
            continue
        if subscription is not None:
            subscriptions.append(subscription)
    return subscriptions


def _to_params(subscription: Subscription) -> dict:
    params = subscription.model_dump()
    params["tier"] = subscription.tier.value
    params["status"] = subscription.status.value
    params["scheduled_tier"] = subscription.scheduled_tier.value if subscription.scheduled_tier else None
    return params


# Module-level instance for convenience
_subscription_store: Optional[SubscriptionStore] = None


def get_subscription_store() -> SubscriptionStore:
    """Get or create the default SubscriptionStore."""
    global _subscription_store
    if _subscription_store is None:
        _subscription_store = SqlSubscriptionStore()
    return _subscription_store


__all__ = [
    "SubscriptionStore",
    "SqlSubscriptionStore",
    "get_subscription_store",
]
