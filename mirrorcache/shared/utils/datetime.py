"""UTC datetime utilities for consistent timezone handling.

Wall-clock values (load timestamps reported by the admin API) are
timezone-aware UTC; LRU ordering uses the monotonic clock instead.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return the current UTC datetime with timezone info."""
    return datetime.now(UTC)
