"""Shared test fixtures and configuration."""

import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from cryptography.fernet import Fernet

from tierguard.config import reset_settings
from tierguard.core.usage.byok import BYOKOverride, KeyEncryptor, ProviderKeyStore
from tierguard.core.usage.counters import LocalCounterStore
from tierguard.core.usage.notifications import LocalWarningMarkStore, NotificationChannel
from tierguard.core.usage.quota_enforcer import QuotaEnforcer
from tierguard.core.usage.schemas import Subscription, SubscriptionStatus, UsageMetric
from tierguard.core.usage.subscription_manager import SubscriptionManager
from tierguard.core.usage.subscription_store import SubscriptionStore
from tierguard.core.usage.usage_store import UsageStore
from tierguard.core.usage.warnings import WarningBroadcaster


# =============================================================================
# Settings Reset
# =============================================================================

@pytest.fixture(autouse=True)
def reset_settings_singleton():
    """Reset settings before and after each test."""
    reset_settings()
    yield
    reset_settings()


# =============================================================================
# Clocks
# =============================================================================

class FixedClock:
    """Controllable UTC clock for subscription tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class MonotonicClock:
    """Controllable monotonic clock (seconds) for counter windows."""

    def __init__(self, start: float = 1000.0):
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def monotonic_clock():
    return MonotonicClock()


# =============================================================================
# In-memory Stores
# =============================================================================

class InMemorySubscriptionStore(SubscriptionStore):
    """Subscription store backed by a dict; returns copies like a real DB."""

    def __init__(self):
        self.rows: Dict[str, Subscription] = {}
        self.fail_reads = False

    async def get_by_user_id(self, user_id: str) -> Optional[Subscription]:
        if self.fail_reads:
            raise ConnectionError("database unavailable")
        for row in self.rows.values():
            if row.user_id == user_id:
                return row.model_copy()
        return None

    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        row = self.rows.get(subscription_id)
        return row.model_copy() if row else None

    async def insert(self, subscription: Subscription) -> Subscription:
        self.rows[subscription.id] = subscription.model_copy()
        return subscription

    async def update(self, subscription: Subscription) -> Subscription:
        self.rows[subscription.id] = subscription.model_copy()
        return subscription

    async def find_expiring(self, cutoff: datetime) -> List[Subscription]:
        return [
            row.model_copy() for row in self.rows.values()
            if row.status == SubscriptionStatus.ACTIVE
            and row.current_period_end is not None
            and row.current_period_end < cutoff
        ]

    async def find_scheduled_changes(self, now: datetime) -> List[Subscription]:
        return [
            row.model_copy() for row in self.rows.values()
            if row.scheduled_tier is not None and row.scheduled_change_date < now
        ]


class InMemoryUsageStore(UsageStore):
    """Usage ledger backed by a dict keyed by (user_id, day)."""

    def __init__(self):
        self.rows: Dict[tuple, UsageMetric] = {}
        self.app_counts: Dict[str, int] = {}
        self.fail = False

    async def increment_daily(
        self,
        user_id: str,
        day: date,
        field: Optional[str] = None,
        amount: int = 0,
        tokens: int = 0,
        estimated_cost: float = 0.0,
    ) -> None:
        if self.fail:
            raise ConnectionError("database unavailable")
        row = self.rows.setdefault((user_id, day), UsageMetric(user_id=user_id, date=day))
        if field:
            setattr(row, field, getattr(row, field) + amount)
        row.tokens_used += tokens
        row.estimated_cost += estimated_cost

    async def get_daily(self, user_id: str, day: date) -> Optional[UsageMetric]:
        if self.fail:
            raise ConnectionError("database unavailable")
        return self.rows.get((user_id, day))

    async def get_range(self, user_id: str, start: date, end: date) -> List[UsageMetric]:
        if self.fail:
            raise ConnectionError("database unavailable")
        return [
            row for (uid, day), row in sorted(self.rows.items(), key=lambda item: item[0][1])
            if uid == user_id and start <= day <= end
        ]

    async def get_total_app_count(self, user_id: str) -> int:
        if self.fail:
            raise ConnectionError("database unavailable")
        return self.app_counts.get(user_id, 0)


class InMemoryProviderKeyStore(ProviderKeyStore):
    def __init__(self):
        self.rows: Dict[str, str] = {}

    async def get(self, user_id: str) -> Optional[str]:
        return self.rows.get(user_id)

    async def put(self, user_id: str, encrypted: str) -> None:
        self.rows[user_id] = encrypted


class RecordingChannel(NotificationChannel):
    """Notification channel that keeps every published message."""

    def __init__(self):
        self.messages: List[tuple] = []

    async def publish(self, user_id: str, message: Dict[str, Any]) -> None:
        self.messages.append((user_id, message))

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for _, m in self.messages if m.get("type") == message_type]


@pytest.fixture
def subscription_store():
    return InMemorySubscriptionStore()


@pytest.fixture
def usage_store():
    return InMemoryUsageStore()


@pytest.fixture
def key_store():
    return InMemoryProviderKeyStore()


@pytest.fixture
def channel():
    return RecordingChannel()


# =============================================================================
# Components wired with fakes
# =============================================================================

@pytest.fixture
def manager(subscription_store, clock):
    return SubscriptionManager(
        store=subscription_store,
        grace_period_days=3,
        billing_cycle_days=30,
        clock=clock,
    )


@pytest.fixture
async def counters(monotonic_clock):
    store = LocalCounterStore(clock=monotonic_clock)
    yield store
    await store.close()


@pytest.fixture
def quotas(counters, usage_store):
    return QuotaEnforcer(counters=counters, usage_store=usage_store, timeout_seconds=1.0)


@pytest.fixture
def encryptor():
    return KeyEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def byok(manager, key_store, encryptor):
    return BYOKOverride(subscriptions=manager, key_store=key_store, encryptor=encryptor)


@pytest.fixture
def broadcaster(channel, monotonic_clock):
    return WarningBroadcaster(
        channel=channel,
        marks=LocalWarningMarkStore(clock=monotonic_clock),
        timeout_seconds=1.0,
    )


# =============================================================================
# Integration Test Markers
# =============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires real Redis/PostgreSQL)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION_TESTS is set."""
    if not os.getenv("RUN_INTEGRATION_TESTS"):
        skip_integration = pytest.mark.skip(
            reason="Set RUN_INTEGRATION_TESTS=1 to run integration tests"
        )
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)
