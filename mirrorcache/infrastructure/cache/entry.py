"""Cache entry: lifecycle of one entity's replica within one tenant store.

NEW -> INITIALIZED -> OPEN -> READY, READY -> OPEN on TTL expiry or clear,
FAILED on a failed load (retried on the next prepare) and INVALID once the
retry budget is exhausted. At most one preparation runs per entry; callers
arriving meanwhile receive the in-flight task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any

from mirrorcache.application.interfaces.data_service import RequestContext
from mirrorcache.domain.enums import EntryStatus
from mirrorcache.domain.model import ReplicationPolicy
from mirrorcache.infrastructure.exceptions import (
    ConsistencyMismatchException,
    RetryBudgetExceededException,
)
from mirrorcache.infrastructure.persistence.query_compiler import chunk_query, count_query
from mirrorcache.shared.telemetry.tracing import traced
from mirrorcache.shared.utils.datetime import utc_now

if TYPE_CHECKING:
    from mirrorcache.infrastructure.cache.tenant_cache import TenantCache

logger = logging.getLogger(__name__)


class CacheEntry:
    """Replica state of one entity for one tenant."""

    def __init__(self, tenant_cache: TenantCache, name: str) -> None:
        self.tenant_cache = tenant_cache
        self.name = name
        self.status = EntryStatus.NEW
        self.initialized = False
        self.failures = 0
        self.touched = time.monotonic()
        self.loaded_at: datetime | None = None
        self.size = 0
        self.prepared: asyncio.Task[EntryStatus] | None = None
        self._preparing: asyncio.Task[EntryStatus] | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def tenant(self) -> str | None:
        return self.tenant_cache.tenant

    @property
    def policy(self) -> ReplicationPolicy:
        return self.tenant_cache.cache.model.policy(self.name) or ReplicationPolicy()

    @property
    def ttl(self) -> float:
        return self.policy.ttl or self.tenant_cache.cache.options.ttl

    @property
    def preparing(self) -> bool:
        return self._preparing is not None and not self._preparing.done()

    def touch(self) -> None:
        self.touched = time.monotonic()

    def prepare(
        self, blocking: bool = True, context: RequestContext | None = None
    ) -> asyncio.Task[EntryStatus]:
        """Start (or join) the preparation of this entry.

        Args:
            blocking: Source rows under the caller's request context; otherwise
                under a tenant-only context (background load).
            context: Caller's request context.

        Returns:
            The in-flight preparation task, resolving to the resulting status.
        """
        if self._preparing is not None and not self._preparing.done():
            return self._preparing
        if context is None:
            context = RequestContext(tenant=self.tenant)
        elif not blocking:
            context = context.for_tenant()
        task = asyncio.create_task(
            self._prepare(context),
            name=f"replication-prepare:{self.tenant or 'default'}:{self.name}",
        )
        self._preparing = task
        self.prepared = task
        self.tenant_cache.cache.tasks.track(task)
        return task

    @traced("replication_cache.entry.prepare")
    async def _prepare(self, context: RequestContext) -> EntryStatus:
        cache = self.tenant_cache.cache
        await cache.template_ready()
        if self.status is EntryStatus.INVALID or self.status is EntryStatus.READY:
            return self.status
        logger.debug("Preparing replication cache ref %s for tenant %s", self.name, self.tenant)
        try:
            if not self.initialized:
                await self.initialize()
            await self.load(context)
        except asyncio.CancelledError:
            if self.status is EntryStatus.OPEN or self.status is EntryStatus.INITIALIZED:
                self.status = EntryStatus.FAILED
            logger.warning(
                "Loading replication cache ref %s for tenant %s was cancelled",
                self.name,
                self.tenant,
            )
            raise
        except Exception as e:
            cache.stats.errors += 1
            self.failures += 1
            if self.failures > cache.options.retries:
                self.status = EntryStatus.INVALID
                logger.error(
                    "Replication cache ref %s for tenant %s is invalid after %d failures: %s",
                    self.name,
                    self.tenant,
                    self.failures,
                    e,
                )
                raise RetryBudgetExceededException(self.name, self.tenant, self.failures) from e
            self.status = EntryStatus.FAILED
            logger.warning(
                "Loading replication cache ref %s for tenant %s failed (%d/%d): %s",
                self.name,
                self.tenant,
                self.failures,
                cache.options.retries,
                e,
            )
            raise
        self.status = EntryStatus.READY
        self.failures = 0
        self.loaded_at = utc_now()
        self._arm_timer()
        logger.debug(
            "Preparing replication cache ref %s for tenant %s finished (%d bytes)",
            self.name,
            self.tenant,
            self.size,
        )
        if cache.options.prune:
            cache.tasks.spawn(
                cache.prune(self.tenant),
                name=f"replication-prune:{self.tenant or 'default'}",
            )
        return self.status

    async def initialize(self) -> None:
        """Create the entity's replica table when the schema is not deployed up front."""
        if not self.tenant_cache.cache.options.deploy:
            await self.tenant_cache.store.ensure_table(self.name)
        self.initialized = True
        self.status = EntryStatus.INITIALIZED

    @traced("replication_cache.entry.load")
    async def load(self, context: RequestContext) -> int:
        """Replace the replica rows with a fresh key-ordered copy from the primary.

        The store lock is taken per write step, never across primary reads,
        so other entities of the tenant stay readable while this one loads.

        Returns:
            Number of rows copied.

        Raises:
            ConsistencyMismatchException: If validation finds a count mismatch.
        """
        self.status = EntryStatus.OPEN
        cache = self.tenant_cache.cache
        options = cache.options
        store = self.tenant_cache.store
        entity = cache.model.get(self.name)
        total = 0
        async with cache.primary.transaction(context) as source:
            async with store.transaction() as target:
                await target.delete_all(self.name)
            while True:
                rows = await source.run(chunk_query(entity, options.chunk_size, total))
                if not rows:
                    break
                async with store.transaction() as target:
                    inserted = await target.insert(self.name, rows)
                if options.validate_load and inserted != len(rows):
                    raise ConsistencyMismatchException(self.name, len(rows), inserted)
                total += len(rows)
                if len(rows) < options.chunk_size:
                    break
            expected = await source.run(count_query(self.name)) if options.validate_load else None
        async with store.transaction() as target:
            if options.validate_load:
                expected_count = int(expected["count"]) if expected else 0
                actual = await target.count(self.name)
                if expected_count != actual or total != actual:
                    raise ConsistencyMismatchException(self.name, expected_count, actual)
            self.size = await target.relation_size(self.name)
        return total

    async def clear(self, rearm: bool = False) -> None:
        """Drop the replica rows; the entry is reloaded on its next prepare.

        Waits for an in-flight preparation first. With rearm, preload-annotated
        entities are prepared again in the background.
        """
        if self._preparing is not None and not self._preparing.done():
            await asyncio.wait([self._preparing])
        if not self.initialized or self.status is EntryStatus.INVALID:
            return
        self.status = EntryStatus.OPEN
        self._cancel_timer()
        async with self.tenant_cache.store.transaction() as tx:
            await tx.delete_all(self.name)
            self.size = await tx.relation_size(self.name)
        self.loaded_at = None
        if rearm and self.policy.preload:
            self.prepare(blocking=False)

    def revive(self) -> bool:
        """Reset an INVALID entry so the next read or preload retries it."""
        if self.status is not EntryStatus.INVALID:
            return False
        self.failures = 0
        self.status = EntryStatus.FAILED if self.initialized else EntryStatus.NEW
        logger.info("Replication cache ref %s for tenant %s revived", self.name, self.tenant)
        return True

    def close(self) -> None:
        self._cancel_timer()
        if self._preparing is not None and not self._preparing.done():
            self._preparing.cancel()

    def describe(self) -> dict[str, Any]:
        return {
            "entity": self.name,
            "tenant": self.tenant,
            "status": self.status.value,
            "size": self.size,
            "failures": self.failures,
            "touched": self.touched,
            "loaded_at": self.loaded_at,
        }

    def _arm_timer(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().call_later(self.ttl, self._expire)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self) -> None:
        self._timer = None
        logger.debug("Replication cache ref %s TTL reached for tenant %s", self.name, self.tenant)
        self.tenant_cache.cache.tasks.spawn(
            self.clear(rearm=True),
            name=f"replication-expire:{self.tenant or 'default'}:{self.name}",
        )
