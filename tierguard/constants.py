"""Application-wide constants and configuration defaults.

This module centralizes the time windows, sentinels and thresholds that are
shared across tier configuration, quota enforcement and warning delivery.
"""

# =============================================================================
# Limits
# =============================================================================
UNLIMITED = -1

# =============================================================================
# Billing Cycle
# =============================================================================
SECONDS_PER_DAY = 24 * 60 * 60
BILLING_CYCLE_DAYS = 30
GRACE_PERIOD_DAYS = 3

# =============================================================================
# Counter Windows
# =============================================================================
RATE_WINDOW_MINUTE = 60
RATE_WINDOW_HOUR = 60 * 60

# =============================================================================
# Outbound Dependency Timeouts
# =============================================================================
DEFAULT_BACKEND_TIMEOUT_SECONDS = 2.0
DEFAULT_NOTIFICATION_TIMEOUT_SECONDS = 2.0

# =============================================================================
# Usage Warnings
# =============================================================================
WARNING_THRESHOLDS = (70, 90, 100)

# =============================================================================
# Background Queue
# =============================================================================
DEFAULT_USAGE_QUEUE_MAX_SIZE = 1000
