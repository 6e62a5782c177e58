"""
Outbound notification channels and warning dedup marks.

Channels push per-user messages (usage snapshots, limit warnings). Mark
stores provide the set-if-absent-with-TTL primitive used to fire each
warning band at most once per billing cycle.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis_async

from tierguard.config import get_settings

logger = logging.getLogger(__name__)


def user_channel(user_id: str) -> str:
    """Pub/sub channel for one user's notifications."""
    return f"usage:{user_id}"


# =============================================================================
# Notification channels
# =============================================================================

class NotificationChannel(ABC):
    """Per-user push channel."""

    @abstractmethod
    async def publish(self, user_id: str, message: Dict[str, Any]) -> None:
        ...


class LoggingNotificationChannel(NotificationChannel):
    """Writes notifications to the log; for single-process setups without push."""

    async def publish(self, user_id: str, message: Dict[str, Any]) -> None:
        logger.info(f"Notification for user {user_id}: {message.get('type')} {message}")


class RedisNotificationChannel(NotificationChannel):
    """Publishes JSON messages on ``usage:{user_id}``."""

    def __init__(self, client: Optional[redis_async.Redis] = None, url: Optional[str] = None):
        if client is None:
            client = redis_async.from_url(url or get_settings().redis_url, decode_responses=True)
        self._redis = client

    async def publish(self, user_id: str, message: Dict[str, Any]) -> None:
        channel = user_channel(user_id)
        receivers = await self._redis.publish(channel, json.dumps(message, default=str))
        logger.debug(f"Published {message.get('type')} to {channel}, {receivers} subscriber(s)")


# =============================================================================
# Warning marks
# =============================================================================

class WarningMarkStore(ABC):
    """Ephemeral dedup markers."""

    @abstractmethod
    async def set_if_absent(self, key: str, ttl_seconds: int) -> bool:
        """Create the marker; True if it did not exist (or had expired)."""


class LocalWarningMarkStore(WarningMarkStore):
    """In-process marks with expiry."""

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        purge_interval: float = 60.0,
    ):
        self._clock = clock or time.monotonic
        self._marks: Dict[str, float] = {}
        self._purge_interval = purge_interval
        self._next_purge = self._clock() + purge_interval

    @property
    def mark_count(self) -> int:
        return len(self._marks)

    def _purge_expired(self, now: float) -> None:
        if now < self._next_purge:
            return
        self._next_purge = now + self._purge_interval
        for key in [k for k, expires_at in self._marks.items() if expires_at <= now]:
            del self._marks[key]

    async def set_if_absent(self, key: str, ttl_seconds: int) -> bool:
        now = self._clock()
        self._purge_expired(now)
        expires_at = self._marks.get(key)
        if expires_at is not None and expires_at > now:
            return False
        self._marks[key] = now + ttl_seconds
        return True


class RedisWarningMarkStore(WarningMarkStore):
    """Marks as Redis keys written with SET NX EX."""

    def __init__(self, client: Optional[redis_async.Redis] = None, url: Optional[str] = None):
        if client is None:
            client = redis_async.from_url(url or get_settings().redis_url, decode_responses=True)
        self._redis = client

    async def set_if_absent(self, key: str, ttl_seconds: int) -> bool:
        created = await self._redis.set(key, "1", nx=True, ex=ttl_seconds)
        return bool(created)


# Singleton instances
_notification_channel: Optional[NotificationChannel] = None
_warning_mark_store: Optional[WarningMarkStore] = None


def get_notification_channel() -> NotificationChannel:
    """Get the configured channel (TIERGUARD_NOTIFICATION_CHANNEL)."""
    global _notification_channel
    if _notification_channel is None:
        if get_settings().notification_channel == "redis":
            _notification_channel = RedisNotificationChannel()
        else:
            _notification_channel = LoggingNotificationChannel()
    return _notification_channel


def get_warning_mark_store() -> WarningMarkStore:
    """Get the mark store matching the counter backend."""
    global _warning_mark_store
    if _warning_mark_store is None:
        if get_settings().counter_backend == "redis":
            _warning_mark_store = RedisWarningMarkStore()
        else:
            _warning_mark_store = LocalWarningMarkStore()
    return _warning_mark_store


__all__ = [
    "NotificationChannel",
    "LoggingNotificationChannel",
    "RedisNotificationChannel",
    "WarningMarkStore",
    "LocalWarningMarkStore",
    "RedisWarningMarkStore",
    "user_channel",
    "get_notification_channel",
    "get_warning_mark_store",
]
