"""
journal_lib.core - Core infrastructure modules.

Re-exports the public API from each sub-module so callers can do:

    from src.journal_lib.core import init_db, get_analytics_cache, JournalError
"""

from src.journal_lib.core.cache import (
    REDIS_AVAILABLE,
    AnalyticsCache,
    flush_all,
    get_analytics_cache,
)
from src.journal_lib.core.errors import (
    ConflictError,
    JournalError,
    LimitExceededError,
    NotFoundError,
    SignatureVerificationError,
    ValidationError,
)
from src.journal_lib.core.logging_config import get_logger, setup_logging
from src.journal_lib.core.models import (
    STATUS_CLOSED,
    STATUS_OPEN,
    TIER_FREE,
    TIER_PREMIUM,
    create_user,
    get_user,
    init_db,
    now_str,
    parse_ts,
)

__all__ = [
    "REDIS_AVAILABLE",
    "AnalyticsCache",
    "flush_all",
    "get_analytics_cache",
    "ConflictError",
    "JournalError",
    "LimitExceededError",
    "NotFoundError",
    "SignatureVerificationError",
    "ValidationError",
    "get_logger",
    "setup_logging",
    "STATUS_CLOSED",
    "STATUS_OPEN",
    "TIER_FREE",
    "TIER_PREMIUM",
    "create_user",
    "get_user",
    "init_db",
    "now_str",
    "parse_ts",
]
