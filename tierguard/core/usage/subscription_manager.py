"""
SubscriptionManager - owns the subscription state machine.

Single responsibility: every change to a user's subscription (create, prorated
upgrade, scheduled downgrade, cancel, reactivate, renew, expire) goes through
this class. Money is handled in integer cents.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from tierguard.config import get_settings
from .exceptions import SubscriptionNotFoundError, TierTransitionError
from .schemas import Subscription, SubscriptionStatus, UpgradeResult
from .subscription_store import SubscriptionStore, get_subscription_store
from .tiers import (
    Tier,
    get_tier_limits,
    is_downgrade,
    is_upgrade,
    parse_tier,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _price_cents(tier: Tier) -> int:
    # Custom (enterprise) pricing is invoiced outside the engine
    return get_tier_limits(tier).price_cents or 0


class SubscriptionManager:
    """
    Manages user subscriptions and tier transitions.

    Responsibilities:
    - Create subscriptions and look them up
    - Prorated upgrades, scheduled downgrades
    - Cancel / reactivate
    - Renew / expire (driven by SubscriptionChecker sweeps)
    - Derive the effective status, including the grace period
    """

    def __init__(
        self,
        store: Optional[SubscriptionStore] = None,
        grace_period_days: Optional[int] = None,
        billing_cycle_days: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize SubscriptionManager.

        Args:
            store: Subscription persistence (default: SQL store)
            grace_period_days: Days past period end that read as past_due
            billing_cycle_days: Length of one billing period
            clock: Returns the current UTC time (injectable for tests)
        """
        settings = get_settings()
        self._store = store or get_subscription_store()
        self._grace = timedelta(
            days=settings.grace_period_days if grace_period_days is None else grace_period_days
        )
        self._cycle = timedelta(
            days=settings.billing_cycle_days if billing_cycle_days is None else billing_cycle_days
        )
        self._clock = clock or _utcnow

    @property
    def grace_period(self) -> timedelta:
        return self._grace

    @property
    def billing_cycle(self) -> timedelta:
        return self._cycle

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_current_subscription(self, user_id: str) -> Optional[Subscription]:
        """Get the user's subscription, or None if they never subscribed."""
        return await self._store.get_by_user_id(user_id)

    async def get_subscription_by_id(self, subscription_id: str) -> Optional[Subscription]:
        """Get a subscription by its id."""
        return await self._store.get_by_id(subscription_id)

    async def _require(self, user_id: str) -> Subscription:
        subscription = await self._store.get_by_user_id(user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)
        return subscription

    async def _require_by_id(self, subscription_id: str) -> Subscription:
        subscription = await self._store.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def get_or_create_subscription(self, user_id: str) -> Subscription:
        """Get the user's subscription, creating a free one on first access."""
        subscription = await self._store.get_by_user_id(user_id)
        if subscription is not None:
            return subscription
        return await self.create(user_id, Tier.FREE)

    # =========================================================================
    # Status derivation
    # =========================================================================

    def derive_status(self, subscription: Subscription) -> SubscriptionStatus:
        """
        Effective status of a subscription at the current time.

        Within [period_end, period_end + grace) the status is past_due, at or
        beyond the grace window it is expired. Subscriptions without an end
        date report their stored status.
        """
        end = subscription.current_period_end
        if end is None:
            return subscription.status

        now = self.now()
        if now < end:
            return subscription.status
        if now < end + self._grace:
            return SubscriptionStatus.PAST_DUE
        return SubscriptionStatus.EXPIRED

    async def get_subscription_status(self, user_id: str) -> SubscriptionStatus:
        """Effective status for a user; expired when no subscription exists."""
        subscription = await self._store.get_by_user_id(user_id)
        if subscription is None:
            return SubscriptionStatus.EXPIRED
        return self.derive_status(subscription)

    async def is_subscription_active(self, user_id: str) -> bool:
        """True if the user's effective status is active."""
        return await self.get_subscription_status(user_id) == SubscriptionStatus.ACTIVE

    async def get_effective_tier(self, user_id: str) -> Tier:
        """
        Tier whose limits apply to the user right now.

        Cancelled and past_due subscriptions keep their tier until the period
        (plus grace) ends. Missing or expired subscriptions, and lookup
        failures, resolve to free.
        """
        try:
            subscription = await self._store.get_by_user_id(user_id)
        except Exception as e:
            logger.error(f"Failed to load subscription for user {user_id}, assuming free: {e}")
            return Tier.FREE

        if subscription is None:
            return Tier.FREE
        if self.derive_status(subscription) == SubscriptionStatus.EXPIRED:
            return Tier.FREE
        return subscription.tier

    async def get_days_until_expiration(self, user_id: str) -> Optional[int]:
        """
        Whole days until the current period ends (rounded up, never negative).

        Returns:
            None if the user has no subscription or it has no end date
        """
        subscription = await self._store.get_by_user_id(user_id)
        if subscription is None or subscription.current_period_end is None:
            return None

        remaining = (subscription.current_period_end - self.now()).total_seconds()
        return max(0, math.ceil(remaining / timedelta(days=1).total_seconds()))

    # =========================================================================
    # Transitions
    # =========================================================================

    async def create(self, user_id: str, tier: Tier = Tier.FREE) -> Subscription:
        """
        Create the user's subscription.

        Paid tiers get a period of one billing cycle and auto-renew; free has
        no end date.

        Raises:
            TierTransitionError: if the user already has a subscription
        """
        tier = parse_tier(tier)
        existing = await self._store.get_by_user_id(user_id)
        if existing is not None:
            logger.info(f"Subscription already exists for user {user_id}, not creating")
            raise TierTransitionError(
                f"User {user_id} already has a {existing.tier.value} subscription",
                from_tier=existing.tier.value,
                to_tier=tier.value,
            )

        now = self.now()
        subscription = Subscription(
            id=str(uuid.uuid4()),
            user_id=user_id,
            tier=tier,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=None if tier == Tier.FREE else now + self._cycle,
            auto_renew=tier != Tier.FREE,
            amount_paid_cents=_price_cents(tier),
            created_at=now,
            updated_at=now,
        )
        await self._store.insert(subscription)

        logger.info(f"Created {tier.value} subscription for user {user_id}")
        return subscription

    def calculate_prorated_amount(
        self,
        subscription: Subscription,
        new_tier: Tier,
    ) -> int:
        """
        Charge in cents for moving mid-cycle to ``new_tier``.

        new_price - old_price * max(0, remaining / cycle), floored at 0. The
        full new price is charged when the current tier is free or the period
        has no end date.
        """
        new_price = _price_cents(new_tier)
        if subscription.tier == Tier.FREE or subscription.current_period_end is None:
            return new_price

        cycle_seconds = int(self._cycle.total_seconds())
        remaining_seconds = max(
            0, int((subscription.current_period_end - self.now()).total_seconds())
        )
        old_price = _price_cents(subscription.tier)
        # Rounded to the nearest cent
        credit = (old_price * remaining_seconds + cycle_seconds // 2) // cycle_seconds
        return max(0, new_price - credit)

    async def upgrade(self, user_id: str, new_tier: Tier) -> UpgradeResult:
        """
        Move the user to a higher tier immediately.

        Starts a new period, clears any scheduled downgrade or cancellation
        and forces the subscription active.

        Raises:
            SubscriptionNotFoundError: if the user has no subscription
            TierTransitionError: if new_tier is not above the current tier
        """
        new_tier = parse_tier(new_tier)
        subscription = await self._require(user_id)

        if not is_upgrade(subscription.tier, new_tier):
            logger.info(
                f"Rejected upgrade for user {user_id}: "
                f"{subscription.tier.value} -> {new_tier.value}"
            )
            raise TierTransitionError(
                f"Cannot upgrade from {subscription.tier.value} to {new_tier.value}",
                from_tier=subscription.tier.value,
                to_tier=new_tier.value,
            )

        prorated = self.calculate_prorated_amount(subscription, new_tier)
        now = self.now()
        updated = subscription.model_copy(update={
            "tier": new_tier,
            "status": SubscriptionStatus.ACTIVE,
            "current_period_start": now,
            "current_period_end": now + self._cycle,
            "auto_renew": True,
            "scheduled_tier": None,
            "scheduled_change_date": None,
            "amount_paid_cents": prorated,
            "cancelled_at": None,
            "cancellation_reason": None,
            "updated_at": now,
        })
        await self._store.update(updated)

        logger.info(
            f"Upgraded user {user_id} from {subscription.tier.value} to {new_tier.value}, "
            f"prorated charge {prorated} cents"
        )
        return UpgradeResult(subscription=updated, prorated_amount_cents=prorated)

    async def downgrade(self, user_id: str, new_tier: Tier) -> Subscription:
        """
        Schedule a move to a lower tier at the end of the current period.

        Tier, status and period are left untouched; no refund is issued.

        Raises:
            SubscriptionNotFoundError: if the user has no subscription
            TierTransitionError: if new_tier is not below the current tier
        """
        new_tier = parse_tier(new_tier)
        subscription = await self._require(user_id)

        if not is_downgrade(subscription.tier, new_tier):
            logger.info(
                f"Rejected downgrade for user {user_id}: "
                f"{subscription.tier.value} -> {new_tier.value}"
            )
            raise TierTransitionError(
                f"Cannot downgrade from {subscription.tier.value} to {new_tier.value}",
                from_tier=subscription.tier.value,
                to_tier=new_tier.value,
            )

        now = self.now()
        change_date = subscription.current_period_end or now + self._cycle
        updated = subscription.model_copy(update={
            "scheduled_tier": new_tier,
            "scheduled_change_date": change_date,
            "updated_at": now,
        })
        await self._store.update(updated)

        logger.info(
            f"Scheduled downgrade for user {user_id}: {subscription.tier.value} -> "
            f"{new_tier.value} on {change_date.isoformat()}"
        )
        return updated

    async def cancel(self, user_id: str, reason: Optional[str] = None) -> Subscription:
        """
        Cancel auto-renewal. Access continues until the period ends.

        Raises:
            SubscriptionNotFoundError: if the user has no subscription
            TierTransitionError: if already cancelled or expired
        """
        subscription = await self._require(user_id)

        if subscription.status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED):
            logger.info(f"Rejected cancel for user {user_id}: status {subscription.status.value}")
            raise TierTransitionError(
                f"Cannot cancel a {subscription.status.value} subscription",
                from_tier=subscription.tier.value,
            )

        now = self.now()
        updated = subscription.model_copy(update={
            "status": SubscriptionStatus.CANCELLED,
            "auto_renew": False,
            "cancelled_at": now,
            "cancellation_reason": reason,
            "updated_at": now,
        })
        await self._store.update(updated)

        logger.info(f"Cancelled {subscription.tier.value} subscription for user {user_id}")
        return updated

    async def reactivate(self, user_id: str) -> Subscription:
        """
        Undo a cancellation. Tier and period are untouched.

        Raises:
            SubscriptionNotFoundError: if the user has no subscription
            TierTransitionError: if the subscription is not cancelled
        """
        subscription = await self._require(user_id)

        if subscription.status != SubscriptionStatus.CANCELLED:
            logger.info(f"Rejected reactivate for user {user_id}: status {subscription.status.value}")
            raise TierTransitionError(
                f"Only cancelled subscriptions can be reactivated (status: {subscription.status.value})",
                from_tier=subscription.tier.value,
            )

        updated = subscription.model_copy(update={
            "status": SubscriptionStatus.ACTIVE,
            "auto_renew": True,
            "cancelled_at": None,
            "cancellation_reason": None,
            "updated_at": self.now(),
        })
        await self._store.update(updated)

        logger.info(f"Reactivated subscription for user {user_id}")
        return updated

    async def mark_past_due(self, user_id: str) -> Subscription:
        """
        Flag a failed renewal payment.

        Raises:
            SubscriptionNotFoundError: if the user has no subscription
            TierTransitionError: if the subscription is not active
        """
        subscription = await self._require(user_id)

        if subscription.status == SubscriptionStatus.PAST_DUE:
            return subscription
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise TierTransitionError(
                f"Cannot mark a {subscription.status.value} subscription past due",
                from_tier=subscription.tier.value,
            )

        updated = subscription.model_copy(update={
            "status": SubscriptionStatus.PAST_DUE,
            "updated_at": self.now(),
        })
        await self._store.update(updated)

        logger.warning(f"Subscription for user {user_id} marked past due")
        return updated

    async def renew(self, subscription_id: str) -> Subscription:
        """
        Start a new billing period, applying any scheduled tier change.

        Raises:
            SubscriptionNotFoundError: if the subscription does not exist
        """
        subscription = await self._require_by_id(subscription_id)

        tier = subscription.scheduled_tier or subscription.tier
        now = self.now()
        updated = subscription.model_copy(update={
            "tier": tier,
            "status": SubscriptionStatus.ACTIVE,
            "current_period_start": now,
            "current_period_end": None if tier == Tier.FREE else now + self._cycle,
            "auto_renew": tier != Tier.FREE,
            "scheduled_tier": None,
            "scheduled_change_date": None,
            "amount_paid_cents": _price_cents(tier),
            "updated_at": now,
        })
        await self._store.update(updated)

        logger.info(
            f"Renewed subscription {subscription_id} for user {subscription.user_id} "
            f"on {tier.value}"
        )
        return updated

    async def expire(self, subscription_id: str) -> Subscription:
        """
        Drop the subscription to free. Calling it again is a no-op.

        Raises:
            SubscriptionNotFoundError: if the subscription does not exist
        """
        subscription = await self._require_by_id(subscription_id)

        if subscription.status == SubscriptionStatus.EXPIRED and subscription.tier == Tier.FREE:
            return subscription

        updated = subscription.model_copy(update={
            "tier": Tier.FREE,
            "status": SubscriptionStatus.EXPIRED,
            "auto_renew": False,
            "scheduled_tier": None,
            "scheduled_change_date": None,
            "updated_at": self.now(),
        })
        await self._store.update(updated)

        logger.info(
            f"Expired {subscription.tier.value} subscription {subscription_id} "
            f"for user {subscription.user_id}"
        )
        return updated


# Module-level instance for convenience
_subscription_manager: Optional[SubscriptionManager] = None


def get_subscription_manager() -> SubscriptionManager:
    """Get or create SubscriptionManager instance."""
    global _subscription_manager
    if _subscription_manager is None:
        _subscription_manager = SubscriptionManager()
    return _subscription_manager


__all__ = [
    "SubscriptionManager",
    "get_subscription_manager",
]
