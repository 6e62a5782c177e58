"""
Custom exceptions for usage enforcement and subscription management.
"""

from typing import Optional, Dict, Any, List


class UsageTrackingError(Exception):
    """Base exception for usage tracking errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class QuotaExceededError(UsageTrackingError):
    """
    Returned when a user exceeds a rate limit or monthly quota.

    Carried as data inside check results; the HTTP guards turn it into a
    402 (Payment Required) response with an upgrade CTA.
    """

    status_code = 402

    def __init__(
        self,
        operation: str,
        current: int,
        limit: int,
        tier: str,
        message: Optional[str] = None,
        window_seconds: Optional[int] = None,
        suggestions: Optional[List[str]] = None,
        upgrade_tier: Optional[str] = None,
    ):
        self.operation = operation
        self.current = current
        self.limit = limit
        self.tier = tier
        self.window_seconds = window_seconds
        self.suggestions = suggestions or []
        self.upgrade_tier = upgrade_tier

        if message is None:
            label = operation.replace("_", " ").title()
            message = f"{label} limit exceeded. Used: {current:,} / {limit:,}"

        super().__init__(
            message=message,
            details={
                "operation": operation,
                "current": current,
                "limit": limit,
                "tier": tier,
                "upgrade_tier": upgrade_tier,
            },
        )

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to HTTP 402 response body."""
        response = {
            "error": "quota_exceeded",
            "operation": self.operation,
            "current": self.current,
            "limit": self.limit,
            "tier": self.tier,
            "message": self.message,
            "status_code": self.status_code,
        }
        if self.window_seconds is not None:
            response["window_seconds"] = self.window_seconds
        if self.suggestions:
            response["suggestions"] = self.suggestions

        if self.upgrade_tier:
            response["upgrade"] = {
                "tier": self.upgrade_tier,
                "message": f"Upgrade to {self.upgrade_tier.title()} for higher limits",
                "url": f"/settings/billing?upgrade={self.upgrade_tier}",
            }

        return response


class FeatureNotAvailableError(UsageTrackingError):
    """Raised when a feature is not part of the user's tier."""

    status_code = 403

    def __init__(self, feature: str, current_tier: str, message: Optional[str] = None):
        self.feature = feature
        self.current_tier = current_tier
        super().__init__(
            message=message or f"Feature '{feature}' is not available on {current_tier} tier",
            details={"feature": feature, "current_tier": current_tier},
        )

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to HTTP 403 response body."""
        return {
            "error": "feature_not_available",
            "message": self.message,
            "feature": self.feature,
            "current_tier": self.current_tier,
            "status_code": self.status_code,
        }


class TierTransitionError(UsageTrackingError):
    """Raised when a subscription change is not legal from the current state."""

    def __init__(self, message: str, from_tier: Optional[str] = None, to_tier: Optional[str] = None):
        super().__init__(
            message=message,
            details={"from_tier": from_tier, "to_tier": to_tier},
        )


class SubscriptionNotFoundError(UsageTrackingError):
    """Raised when subscription is not found for a user."""

    def __init__(self, user_id: str):
        super().__init__(
            message=f"Subscription not found for user: {user_id}",
            details={"user_id": user_id},
        )


class TierNotFoundError(UsageTrackingError):
    """Raised when subscription tier is not found."""

    def __init__(self, tier: str):
        super().__init__(
            message=f"Subscription tier not found: {tier}",
            details={"tier": tier},
        )


class CounterBackendError(UsageTrackingError):
    """Raised by counter backends when the owner of a key cannot be reached."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(
            message=message,
            details={"key": key} if key else {},
        )


class MissingProviderKeyError(UsageTrackingError):
    """
    Raised when a BYOK user has no credentials for the requested provider.

    This is a configuration problem on the user's side and must reach the
    caller; it never turns into an unlimited allowance.
    """

    def __init__(self, user_id: str, provider: str):
        self.user_id = user_id
        self.provider = provider
        super().__init__(
            message=f"No {provider} API key configured for BYOK user {user_id}",
            details={"user_id": user_id, "provider": provider},
        )


__all__ = [
    "UsageTrackingError",
    "QuotaExceededError",
    "FeatureNotAvailableError",
    "TierTransitionError",
    "SubscriptionNotFoundError",
    "TierNotFoundError",
    "CounterBackendError",
    "MissingProviderKeyError",
]
