"""Integration tests for the Redis counter backend.

Requires a reachable Redis (TIERGUARD_REDIS_URL, default redis://localhost:6379/0).
"""

import asyncio
import uuid

import pytest

from tierguard.core.usage.counters import RedisCounterStore
from tierguard.core.usage.notifications import RedisWarningMarkStore

pytestmark = pytest.mark.integration


@pytest.fixture
async def store():
    store = RedisCounterStore()
    yield store
    await store.close()


@pytest.fixture
def key():
    return f"test:rate:ai_generation:user:{uuid.uuid4()}"


@pytest.mark.asyncio
async def test_script_enforces_ceiling_under_concurrency(store, key):
    results = await asyncio.gather(*[store.increment(key, limit=10, period=60) for _ in range(40)])

    assert sum(1 for r in results if r.success) == 10
    assert await store.get_remaining_limit(key, limit=10, period=60) == 0
    await store.reset_limit(key)


@pytest.mark.asyncio
async def test_reset_starts_fresh_window(store, key):
    await store.increment(key, limit=2, period=60, amount=2)
    await store.reset_limit(key)

    result = await store.increment(key, limit=2, period=60)

    assert result.success
    assert result.remaining == 1
    await store.reset_limit(key)


@pytest.mark.asyncio
async def test_warning_mark_set_once(key):
    marks = RedisWarningMarkStore()

    assert await marks.set_if_absent(f"warning:{key}:70", 60)
    assert not await marks.set_if_absent(f"warning:{key}:70", 60)
