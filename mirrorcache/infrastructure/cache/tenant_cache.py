"""Per-tenant replica: one replica store plus the entity-to-entry map."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from mirrorcache.infrastructure.cache.entry import CacheEntry
from mirrorcache.infrastructure.exceptions import StoreProvisionException
from mirrorcache.infrastructure.persistence.replica_store import ReplicaStore, store_path

if TYPE_CHECKING:
    from mirrorcache.infrastructure.cache.replication_cache import ReplicationCache

logger = logging.getLogger(__name__)


class TenantCache:
    """Replica store and cache entries of one tenant (None = default tenant)."""

    def __init__(self, cache: ReplicationCache, tenant: str | None) -> None:
        self.cache = cache
        self.tenant = tenant
        self.store = ReplicaStore(cache.model, store_path(cache.options, tenant), tenant)
        self.entries: dict[str, CacheEntry] = {}

    async def provision(self) -> TenantCache:
        """Open the tenant's replica store.

        With deploy on disk the store starts as a copy of the template file;
        with deploy in memory the full replicated schema is created; without
        deploy the store starts empty and tables are created per entry.

        Raises:
            StoreProvisionException: If the store cannot be opened or deployed.
        """
        options = self.cache.options
        template = await self.cache.template_ready() if options.deploy else None
        await self.store.open(template)
        if options.deploy and options.in_memory:
            try:
                await self.store.deploy(self.cache.refs)
            except Exception as e:
                await self.store.close()
                raise StoreProvisionException(self.tenant, str(e)) from e
        logger.debug("Replication cache store opened for tenant %s", self.tenant)
        return self

    def get_or_create_entry(self, name: str) -> CacheEntry:
        entry = self.entries.get(name)
        if entry is None:
            entry = CacheEntry(self, name)
            self.entries[name] = entry
        return entry

    def entry(self, name: str) -> CacheEntry | None:
        return self.entries.get(name)

    def size(self, name: str | None = None) -> int:
        """Bytes held by one entry, or by all entries of the tenant."""
        if name is not None:
            entry = self.entries.get(name)
            return entry.size if entry else 0
        return sum(entry.size for entry in self.entries.values())

    async def close(self) -> None:
        """Cancel timers and in-flight preparations, then dispose of the store."""
        for entry in self.entries.values():
            entry.close()
        await self.store.close()
