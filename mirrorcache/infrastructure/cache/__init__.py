"""Replication cache: coordinator, tenant caches, entries and statistics.

ReplicationCache routes reads; CachedDataService is the read-through
boundary wrapping the primary data service.
"""

from mirrorcache.infrastructure.cache.cached_service import CachedDataService
from mirrorcache.infrastructure.cache.coalescing import CoalescingMap, TaskRegistry
from mirrorcache.infrastructure.cache.entry import CacheEntry
from mirrorcache.infrastructure.cache.replication_cache import ReplicationCache
from mirrorcache.infrastructure.cache.stats import ReplicationStats
from mirrorcache.infrastructure.cache.tenant_cache import TenantCache

__all__ = [
    "CacheEntry",
    "CachedDataService",
    "CoalescingMap",
    "ReplicationCache",
    "ReplicationStats",
    "TaskRegistry",
    "TenantCache",
]
