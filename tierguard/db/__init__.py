"""
PostgreSQL access for tierguard.

Provides connection management and retry helpers. Tables (subscriptions,
usage_metrics, apps, user_secrets) are owned by the host application's
migrations; this package only reads and writes them.
"""

from .connection import DatabaseConfig, DatabaseManager, db, get_session
from .utils import with_db_retry, row_to_dict

__all__ = [
    "DatabaseConfig",
    "DatabaseManager",
    "db",
    "get_session",
    "with_db_retry",
    "row_to_dict",
]
