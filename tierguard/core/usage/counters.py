"""
Atomic usage counters.

Every counter key has exactly one serializing owner, and the bound check and
the increment happen together at that owner, so racing requests can never
push a counter past its limit.

- LocalCounterStore: one asyncio actor (mailbox + task) per key, for
  single-process deployments and tests.
- RedisCounterStore: a Lua script per call; Redis runs scripts one at a time,
  which makes the server the owner of every key.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis_async

from tierguard.config import get_settings
from .exceptions import CounterBackendError
from .schemas import IncrementResult

logger = logging.getLogger(__name__)


def counter_key(scope: str, operation: str, user_id: str) -> str:
    """Build a counter key: ``{scope}:{operation}:user:{user_id}``."""
    return f"{scope}:{operation}:user:{user_id}"


class CounterStore(ABC):
    """Interface of the durable counter actor."""

    @abstractmethod
    async def increment(self, key: str, limit: int, period: int, amount: int = 1) -> IncrementResult:
        """
        Add ``amount`` to the counter unless that would exceed ``limit``.

        Args:
            key: Counter key
            limit: Ceiling for the window
            period: Window length in seconds, started by the first increment
            amount: Units to add

        Returns:
            IncrementResult; on success=False the counter is unchanged
        """

    @abstractmethod
    async def get_remaining_limit(self, key: str, limit: int, period: int) -> int:
        """Units left in the current window (never negative)."""

    @abstractmethod
    async def reset_limit(self, key: str) -> None:
        """Drop the counter so the next increment starts a fresh window."""

    async def close(self) -> None:
        """Release backend resources."""


# =============================================================================
# Local actor backend
# =============================================================================

class _CounterActor:
    """Owns one counter key; messages are handled strictly one at a time."""

    def __init__(self, key: str, clock: Callable[[], float]):
        self.key = key
        self._clock = clock
        self._count = 0
        self._window_end: Optional[float] = None
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name=f"counter:{key}")

    async def ask(self, message: str, *args: Any) -> Any:
        future = asyncio.get_running_loop().create_future()
        await self._mailbox.put((message, args, future))
        return await future

    async def _run(self) -> None:
        while True:
            message, args, future = await self._mailbox.get()
            try:
                result = getattr(self, f"_on_{message}")(*args)
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

    def _roll_window(self) -> None:
        if self._window_end is not None and self._clock() >= self._window_end:
            self._count = 0
            self._window_end = None

    def _on_increment(self, limit: int, period: int, amount: int) -> IncrementResult:
        self._roll_window()
        if self._count + amount > limit:
            return IncrementResult(success=False, remaining=max(0, limit - self._count))

        self._count += amount
        if self._window_end is None:
            self._window_end = self._clock() + period
        return IncrementResult(success=True, remaining=max(0, limit - self._count))

    def _on_remaining(self, limit: int) -> int:
        self._roll_window()
        return max(0, limit - self._count)

    def _on_reset(self) -> None:
        self._count = 0
        self._window_end = None

    def is_idle(self) -> bool:
        """True when no message is queued and the window holds nothing."""
        if not self._mailbox.empty():
            return False
        return self._window_end is None or self._clock() >= self._window_end

    def stop(self) -> None:
        self._task.cancel()


class LocalCounterStore(CounterStore):
    """
    In-process counter backend built from one actor per key.

    Different keys proceed in parallel; calls on the same key are totally
    ordered by that key's mailbox.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        purge_interval: float = 60.0,
    ):
        self._clock = clock or time.monotonic
        self._actors: Dict[str, _CounterActor] = {}
        self._purge_interval = purge_interval
        self._next_purge = self._clock() + purge_interval

    @property
    def actor_count(self) -> int:
        return len(self._actors)

    def _purge_idle(self) -> None:
        """Retire actors whose window has rolled over with an empty mailbox."""
        now = self._clock()
        if now < self._next_purge:
            return
        self._next_purge = now + self._purge_interval

        idle = [key for key, actor in self._actors.items() if actor.is_idle()]
        for key in idle:
            self._actors.pop(key).stop()
        if idle:
            logger.debug(f"Retired {len(idle)} idle counter actors")

    def _actor(self, key: str) -> _CounterActor:
        self._purge_idle()
        actor = self._actors.get(key)
        if actor is None:
            actor = _CounterActor(key, self._clock)
            self._actors[key] = actor
        return actor

    async def increment(self, key: str, limit: int, period: int, amount: int = 1) -> IncrementResult:
        return await self._actor(key).ask("increment", limit, period, amount)

    async def get_remaining_limit(self, key: str, limit: int, period: int) -> int:
        return await self._actor(key).ask("remaining", limit)

    async def reset_limit(self, key: str) -> None:
        await self._actor(key).ask("reset")

    async def close(self) -> None:
        for actor in self._actors.values():
            actor.stop()
        self._actors.clear()


# =============================================================================
# Redis backend
# =============================================================================

# KEYS: counter key
# ARGV: limit, amount, period_seconds
# Returns {1|0, remaining}; the counter never moves past the limit.
_LUA_INCREMENT_WITH_CEILING = r"""
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local amount = tonumber(ARGV[2])
local period = tonumber(ARGV[3])

local current = tonumber(redis.call("GET", key) or "0")
if current + amount > limit then
  return {0, limit - current}
end

local updated = redis.call("INCRBY", key, amount)
if updated == amount then
  -- first increment opens the window
  redis.call("EXPIRE", key, period)
end
return {1, limit - updated}
"""


class RedisCounterStore(CounterStore):
    """Counter backend shared by every process through Redis."""

    def __init__(self, client: Optional[redis_async.Redis] = None, url: Optional[str] = None):
        """
        Args:
            client: Existing redis.asyncio client to reuse
            url: Redis URL used when no client is given (default from settings)
        """
        if client is None:
            client = redis_async.from_url(url or get_settings().redis_url, decode_responses=True)
        self._redis = client
        self._increment_script = self._redis.register_script(_LUA_INCREMENT_WITH_CEILING)

    async def increment(self, key: str, limit: int, period: int, amount: int = 1) -> IncrementResult:
        try:
            result = await self._increment_script(keys=[key], args=[limit, amount, period])
        except Exception as e:
            raise CounterBackendError(f"Redis increment failed: {e}", key=key) from e

        success, remaining = _parse_script_result(result)
        return IncrementResult(success=success, remaining=max(0, remaining))

    async def get_remaining_limit(self, key: str, limit: int, period: int) -> int:
        try:
            current = await self._redis.get(key)
        except Exception as e:
            raise CounterBackendError(f"Redis read failed: {e}", key=key) from e
        return max(0, limit - int(current or 0))

    async def reset_limit(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except Exception as e:
            raise CounterBackendError(f"Redis delete failed: {e}", key=key) from e

    async def close(self) -> None:
        await self._redis.aclose()


def _parse_script_result(result: Any) -> Tuple[bool, int]:
    if not isinstance(result, (list, tuple)) or len(result) != 2:
        raise CounterBackendError(f"Unexpected counter script response: {result!r}")
    return int(result[0]) == 1, int(result[1])


# Singleton instance
_counter_store: Optional[CounterStore] = None


def get_counter_store() -> CounterStore:
    """Get the configured counter backend (TIERGUARD_COUNTER_BACKEND)."""
    global _counter_store
    if _counter_store is None:
        backend = get_settings().counter_backend
        if backend == "redis":
            _counter_store = RedisCounterStore()
        else:
            _counter_store = LocalCounterStore()
        logger.info(f"Counter backend initialized: {backend}")
    return _counter_store


def reset_counter_store() -> None:
    """Forget the configured backend (for testing)."""
    global _counter_store
    _counter_store = None


__all__ = [
    "CounterStore",
    "LocalCounterStore",
    "RedisCounterStore",
    "counter_key",
    "get_counter_store",
    "reset_counter_store",
]
