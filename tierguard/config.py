"""
Enforcement engine configuration.

All settings are configurable via environment variables with TIERGUARD_ prefix.
"""

from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    BILLING_CYCLE_DAYS,
    DEFAULT_BACKEND_TIMEOUT_SECONDS,
    DEFAULT_NOTIFICATION_TIMEOUT_SECONDS,
    DEFAULT_USAGE_QUEUE_MAX_SIZE,
    GRACE_PERIOD_DAYS,
    SECONDS_PER_DAY,
)

load_dotenv()


class EnforcementSettings(BaseSettings):
    """Configuration for quota enforcement and subscription lifecycle."""

    model_config = SettingsConfigDict(env_prefix="TIERGUARD_", case_sensitive=False)

    # Subscription lifecycle
    grace_period_days: int = Field(
        default=GRACE_PERIOD_DAYS,
        description="Days after period end during which status reads past_due",
    )
    billing_cycle_days: int = Field(
        default=BILLING_CYCLE_DAYS,
        description="Length of one billing cycle in days; also the monthly counter window, "
                    "warning dedup period and rolling usage range",
    )

    # Counter backend
    counter_backend: Literal["local", "redis"] = Field(
        default="local",
        description="Where rate and monthly counters live; local keeps them in this process "
                    "and is only correct for a single-process deployment, use redis when several "
                    "processes enforce the same limits",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL used by the redis counter, mark and notification backends",
    )
    backend_timeout_seconds: float = Field(
        default=DEFAULT_BACKEND_TIMEOUT_SECONDS,
        description="Upper bound for a single counter backend call",
    )

    # Notifications
    notification_channel: Literal["log", "redis"] = Field(
        default="log",
        description="Where usage warnings and snapshots are pushed",
    )
    notification_timeout_seconds: float = Field(
        default=DEFAULT_NOTIFICATION_TIMEOUT_SECONDS,
        description="Upper bound for a single notification push",
    )

    # BYOK credentials
    encryption_key: Optional[str] = Field(
        default=None,
        description="Fernet key used to encrypt user provider credentials",
    )

    # Ledger
    usage_queue_max_size: int = Field(
        default=DEFAULT_USAGE_QUEUE_MAX_SIZE,
        description="Maximum pending ledger events before new ones are dropped",
    )

    @property
    def billing_cycle_seconds(self) -> int:
        return self.billing_cycle_days * SECONDS_PER_DAY


# Singleton config instance
_settings: Optional[EnforcementSettings] = None


def get_settings() -> EnforcementSettings:
    """Get the enforcement settings singleton."""
    global _settings
    if _settings is None:
        _settings = EnforcementSettings()
    return _settings


def reset_settings() -> None:
    """Reset the settings singleton (for testing)."""
    global _settings
    _settings = None
