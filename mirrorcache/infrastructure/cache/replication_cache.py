"""Replication cache coordinator: read routing, coalescing and size budget.

A read is served from the tenant's local replica only when every base
entity it depends on is replicated and READY; otherwise, and on any cache
error, it is delegated to the primary. One instance per process, created
at startup and shut down explicitly.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Any

import aiofiles.os

from mirrorcache.application.interfaces.data_service import (
    ActivePredicate,
    DataService,
    NextHandler,
    RequestContext,
)
from mirrorcache.application.services.reference_resolver import ReferenceResolver, unique
from mirrorcache.core.config import ReplicationOptions
from mirrorcache.core.constants import TEMPLATE_TENANT
from mirrorcache.domain.enums import ALL_TENANTS, EntryStatus, TenantScope
from mirrorcache.domain.exceptions import ResolutionAmbiguityException
from mirrorcache.domain.model import DataModel, ReplicationPolicy
from mirrorcache.domain.query import Query, RawQuery, Select
from mirrorcache.infrastructure.cache.coalescing import CoalescingMap, TaskRegistry
from mirrorcache.infrastructure.cache.entry import CacheEntry
from mirrorcache.infrastructure.cache.stats import ReplicationStats
from mirrorcache.infrastructure.cache.tenant_cache import TenantCache
from mirrorcache.infrastructure.persistence.replica_store import ReplicaStore, store_path
from mirrorcache.shared.telemetry.tracing import (
    TracedOperation,
    add_span_attributes,
    add_span_event,
    set_span_error,
)

logger = logging.getLogger(__name__)


class ReplicationCache:
    """Routes reads between per-tenant replicas and the primary data service."""

    def __init__(
        self,
        model: DataModel,
        primary: DataService,
        options: ReplicationOptions | None = None,
        active: ActivePredicate | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            model: Data-definition model with replication policies.
            primary: Data service the replicas are loaded from and reads fall back to.
            options: Cache options (defaults when omitted).
            active: Optional predicate deciding per tenant whether the cache applies.
        """
        self.model = model
        self.primary = primary
        self.options = options or ReplicationOptions()
        self.active = active
        self.resolver = ReferenceResolver(model, self.options.max_depth)
        self.refs: list[str] = model.replicated(self.options.name, self.options.group)
        self.stats = ReplicationStats()
        self.tenants: CoalescingMap[str | None, TenantCache] = CoalescingMap()
        self.tasks = TaskRegistry()
        self._scope = set(self.refs)
        self._template: asyncio.Task[Path | None] | None = None
        self._loops: list[asyncio.Task[None]] = []

    # Lifecycle

    async def start(self) -> None:
        """Create the template store (disk deploy) and start the periodic loops."""
        if not self.options.enabled:
            logger.info("Replication cache disabled")
            return
        await self.template_ready()
        if self.options.check_interval > 0:
            self._loops.append(
                asyncio.create_task(
                    self._every(self.options.check_interval, self.prune, "Pruning replication cache"),
                    name="replication-check",
                )
            )
        if self.options.stats_interval > 0:
            self._loops.append(
                asyncio.create_task(
                    self._every(
                        self.options.stats_interval,
                        self.log_stats,
                        "Logging replication cache statistics",
                    ),
                    name="replication-stats",
                )
            )
        logger.info(
            "Replication cache started: %d entities in scope, database=%s, deploy=%s",
            len(self.refs),
            self.options.database,
            self.options.deploy,
        )

    async def shutdown(self) -> None:
        """Stop loops and background work, then close every tenant store."""
        for loop in self._loops:
            loop.cancel()
        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()
        await self.tasks.cancel_all()
        for tenant_cache in self.tenants.values():
            await tenant_cache.close()
        self.tenants.clear()
        logger.info("Replication cache shut down")

    async def _every(
        self, interval: float, action: Callable[[], Awaitable[Any]], description: str
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await action()
            except Exception:
                logger.exception("%s failed", description)

    async def template_ready(self) -> Path | None:
        """Path of the schema-deployed template store (disk deploy only).

        Created once; a failed creation is retried by the next caller.
        """
        if not self.options.deploy or self.options.in_memory:
            return None
        if self._template is None:
            self._template = asyncio.create_task(self._create_template(), name="replication-template")
        try:
            return await asyncio.shield(self._template)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._template = None
            raise

    async def _create_template(self) -> Path | None:
        path = store_path(self.options, TEMPLATE_TENANT)
        if path is None:
            return None
        logger.debug("Preparing replication cache template database %s", path)
        if path.exists():
            await aiofiles.os.remove(path)
        store = ReplicaStore(self.model, path, TEMPLATE_TENANT)
        await store.open()
        try:
            await store.deploy(self.refs)
        finally:
            await store.close()
        return path

    # Read routing

    async def read(self, query: Query, context: RequestContext, next: NextHandler) -> Any:
        """Serve a read from the tenant replica when possible, else call next().

        Never raises cache-side errors: they are counted and the read falls
        back to the primary. Errors raised by next() propagate unchanged.
        """
        if not self.options.enabled or isinstance(query, RawQuery) or not query.use_cache:
            return await next()
        if not await self._is_active(context.tenant):
            logger.debug("Replication cache not enabled for tenant %s", context.tenant)
            return await next()
        self.stats.hits += 1
        try:
            async with TracedOperation(
                "replication_cache.read", {"replication.tenant": context.tenant or "default"}
            ):
                return await self._read(query, context, next)
        finally:
            if self.options.preload:
                self.tasks.spawn(
                    self.preload_annotated(context.tenant),
                    name=f"replication-preload:{context.tenant or 'default'}",
                )

    async def _read(self, query: Select, context: RequestContext, next: NextHandler) -> Any:
        target = self.resolver.target_name(query) or "?"
        if query.search and not self.options.search:
            self.stats.search[target] += 1
            logger.debug("Replication cache skipped for search on %s", target)
            return await next()
        try:
            refs = self._relevant_refs(query, target)
        except ResolutionAmbiguityException as e:
            logger.debug("Replication cache not used: %s", e.message)
            return await next()
        if not refs:
            return await next()

        for ref in refs:
            self.stats.counts[ref] += 1
        tenant = self._tenant_for(refs, context.tenant)
        add_span_attributes(refs=",".join(refs))
        tenant_cache: TenantCache | None = None
        try:
            if await self.load(tenant, refs, context=context) is EntryStatus.READY:
                tenant_cache = self.tenants.get(tenant)
            if tenant_cache is not None and not self.options.measure:
                result = await tenant_cache.store.run(query, context)
                self._served(refs)
                return result
        except Exception as e:
            tenant_cache = None
            self._failed(e)
        if tenant_cache is not None:
            store = tenant_cache.store
            return await self.measure(lambda: store.run(query, context), next, refs)
        self.stats.missed += 1
        add_span_event("replication_cache.fallback")
        logger.debug("Replication cache was not used for %s", refs)
        return await next()

    def _served(self, refs: list[str]) -> None:
        self.stats.used += 1
        logger.debug("Replication cache was used for %s", refs)

    def _failed(self, error: Exception) -> None:
        self.stats.errors += 1
        set_span_error(error)
        logger.warning("Replication cache read failed, falling back: %s", error, exc_info=True)

    def _relevant_refs(self, query: Select, target: str) -> list[str]:
        """Base entity refs a read needs, or [] when the cache must not serve it.

        Raises:
            ResolutionAmbiguityException: If the query shape cannot be classified.
        """
        if self.options.deploy:
            refs = self.resolver.resolve(query, base_only=True)
        else:
            refs = self.resolver.resolve(query)
            if query.localized or any(self.model.base_of_texts(r) for r in refs):
                self.stats.localized[target] += 1
                logger.debug("Replication cache not enabled for localized %s without deploy", target)
                return []
            views = [r for r in refs if self._is_view(r)]
            if views:
                for view in views:
                    self.stats.projections[view] += 1
                logger.debug("Replication cache not enabled for projections %s without deploy", views)
                return []
        if not refs:
            return []
        outside = [ref for ref in refs if ref not in self._scope]
        if len(outside) == len(refs):
            return []
        if outside:
            for ref in outside:
                self.stats.not_relevant[ref] += 1
                logger.debug("Replication cache not relevant for query including ref %s", ref)
            return []
        return refs

    async def _is_active(self, tenant: str | None) -> bool:
        if self.active is None:
            return True
        result = self.active(tenant)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    def _is_view(self, ref: str) -> bool:
        entity = self.model.entities.get(ref)
        return entity is not None and entity.is_view

    def _policy(self, ref: str) -> ReplicationPolicy:
        return self.model.policy(ref) or ReplicationPolicy()

    def _tenant_for(self, refs: Iterable[str], tenant: str | None) -> str | None:
        """Static reference data is served from the default tenant's replica."""
        if all(self._policy(ref).static for ref in refs):
            return None
        return tenant

    async def measure(
        self,
        from_cache: Callable[[], Awaitable[Any]],
        from_service: NextHandler,
        refs: list[str] | None = None,
    ) -> Any:
        """Run replica and primary reads concurrently; return the replica result.

        The latency improvement in percent is added to the measure statistics.
        When the replica read fails the primary result is returned instead
        (counted as an error and a miss); primary errors propagate.
        """

        async def timed(call: Callable[[], Awaitable[Any]]) -> tuple[Any, float]:
            start = time.perf_counter()
            result = await call()
            return result, (time.perf_counter() - start) * 1000

        cached, served = await asyncio.gather(
            timed(from_cache), timed(from_service), return_exceptions=True
        )
        if isinstance(served, BaseException):
            raise served
        if isinstance(cached, Exception):
            self._failed(cached)
            self.stats.missed += 1
            return served[0]
        if isinstance(cached, BaseException):
            raise cached
        (result, time_cache), (_, time_service) = cached, served
        percent = (time_service - time_cache) / time_service * 100 if time_service > 0 else 0.0
        logger.info(
            "Replication cache measurement %d %.2f %.2f", round(percent), time_cache, time_service
        )
        self.stats.record_measure(percent)
        self._served(refs or [])
        return result

    # Loading

    async def cached(self, tenant: str | None) -> TenantCache:
        """Tenant cache, provisioned on first use (concurrent callers share one provisioning)."""
        return await self.tenants.get_or_create(tenant, lambda: self._provision(tenant))

    async def _provision(self, tenant: str | None) -> TenantCache:
        tenant_cache = TenantCache(self, tenant)
        await tenant_cache.provision()
        logger.info("Replication cache provisioned for tenant %s", tenant or "default")
        return tenant_cache

    async def load(
        self,
        tenant: str | None,
        refs: Iterable[str],
        auto: bool | None = None,
        wait: bool | None = None,
        context: RequestContext | None = None,
        force: bool = False,
    ) -> EntryStatus:
        """Ensure entries exist for refs and start preparing the ones not READY.

        Args:
            tenant: Tenant whose replica is used (None = default tenant).
            refs: Entity names; views are ignored.
            auto: Prepare entries that are not READY (defaults to the auto option).
            wait: Await preparation (defaults to the wait option).
            context: Request context rows are sourced under when waiting.
            force: Prepare even entities whose policy disables auto loading.

        Returns:
            READY when every entry is READY, NOT_READY otherwise. A failed
            preparation leaves its entry FAILED or INVALID (the entry counts
            it under errors) and is reported as NOT_READY.
        """
        auto = self.options.auto if auto is None else auto
        wait = self.options.wait if wait is None else wait
        refs = [ref for ref in refs if not self._is_view(ref)]
        if not refs:
            return EntryStatus.NOT_READY
        if context is None or context.tenant != tenant:
            context = RequestContext(tenant=tenant)
        if not wait and self.tenants.get(tenant) is None:
            # Provisioning happens in the background; this read is not served
            self.tasks.spawn(
                self._prepare_detached(tenant, refs, auto, context, force),
                name=f"replication-load:{tenant or 'default'}",
            )
            return EntryStatus.NOT_READY
        tenant_cache, pending = await self._prepare_refs(tenant, refs, auto, wait, context, force)
        if wait and pending:
            # Cancelling this caller leaves the shared preparations running
            await asyncio.wait(pending)
        for ref in refs:
            entry = tenant_cache.entry(ref)
            if entry is None or entry.status is not EntryStatus.READY:
                return EntryStatus.NOT_READY
        return EntryStatus.READY

    async def _prepare_refs(
        self,
        tenant: str | None,
        refs: list[str],
        auto: bool,
        wait: bool,
        context: RequestContext,
        force: bool,
    ) -> tuple[TenantCache, list[asyncio.Task[EntryStatus]]]:
        tenant_cache = await self.cached(tenant)
        pending: list[asyncio.Task[EntryStatus]] = []
        for ref in refs:
            entry = tenant_cache.get_or_create_entry(ref)
            entry.touch()
            if entry.status is EntryStatus.READY or not auto:
                continue
            if not force and not self._policy(ref).auto:
                continue
            pending.append(entry.prepare(blocking=wait, context=context))
        return tenant_cache, pending

    async def _prepare_detached(
        self,
        tenant: str | None,
        refs: list[str],
        auto: bool,
        context: RequestContext,
        force: bool,
    ) -> None:
        try:
            await self._prepare_refs(tenant, refs, auto, False, context, force)
        except Exception as e:
            self.stats.errors += 1
            logger.warning(
                "Replication cache provisioning for tenant %s failed: %s", tenant or "default", e
            )

    async def preload(self, tenant: str | None, refs: Iterable[str]) -> EntryStatus:
        """Load entities (views as their base entities, plus texts) and wait for them.

        Static entities go to the default tenant's replica. Failures of
        individual entries are logged by the task registry and reported as
        NOT_READY.
        """
        expanded = self.resolver.base_refs(refs)
        texts = [t for t in (self.model.texts_of(r) for r in expanded) if t]
        refs = [r for r in unique(expanded + texts) if r in self._scope]
        if not refs:
            return EntryStatus.NOT_READY
        groups: dict[str | None, list[str]] = {}
        for ref in refs:
            groups.setdefault(self._tenant_for([ref], tenant), []).append(ref)
        ready = True
        for target, group in groups.items():
            context = RequestContext(tenant=target)
            tenant_cache, pending = await self._prepare_refs(target, group, True, True, context, True)
            if pending:
                await asyncio.wait(pending)
            ready = ready and all(
                (entry := tenant_cache.entry(ref)) is not None
                and entry.status is EntryStatus.READY
                for ref in group
            )
        return EntryStatus.READY if ready else EntryStatus.NOT_READY

    async def preload_annotated(self, tenant: str | None) -> None:
        """Preload every in-scope entity whose policy asks for it and is not yet READY."""
        annotated = [
            ref
            for ref in self.refs
            if self._policy(ref).preload and self.model.base_of_texts(ref) is None
        ]
        static = [ref for ref in annotated if self._policy(ref).static]
        scoped = [ref for ref in annotated if not self._policy(ref).static]
        for target, refs in ((None, static), (tenant, scoped)):
            refs = [ref for ref in refs if not self._settled(target, ref)]
            if refs:
                await self.preload(target, refs)

    def _settled(self, tenant: str | None, ref: str) -> bool:
        tenant_cache = self.tenants.get(tenant)
        entry = tenant_cache.entry(ref) if tenant_cache else None
        return entry is not None and (entry.status.settled or entry.preparing)

    async def prepared(
        self, tenant: str | None | TenantScope = ALL_TENANTS, ref: str | None = None
    ) -> None:
        """Wait until outstanding preparations (and other detached work) settle."""
        await self.tasks.settle()
        pending = [
            entry.prepared
            for entry in self._entries(tenant, ref)
            if entry.prepared is not None and not entry.prepared.done()
        ]
        if pending:
            await asyncio.wait(pending)

    # Maintenance

    def _tenant_caches(self, tenant: str | None | TenantScope) -> list[TenantCache]:
        """The given tenant's cache (None = default tenant), or every provisioned one."""
        if tenant is ALL_TENANTS:
            return self.tenants.values()
        tenant_cache = self.tenants.get(tenant)
        return [tenant_cache] if tenant_cache else []

    def _entries(self, tenant: str | None | TenantScope, ref: str | None) -> list[CacheEntry]:
        entries: list[CacheEntry] = []
        for tenant_cache in self._tenant_caches(tenant):
            if ref is None:
                entries += tenant_cache.entries.values()
            elif (entry := tenant_cache.entry(ref)) is not None:
                entries.append(entry)
        return entries

    async def clear(
        self, tenant: str | None | TenantScope = ALL_TENANTS, ref: str | None = None
    ) -> None:
        """Clear the replica of one ref or all refs, for one tenant or ALL_TENANTS."""
        for entry in self._entries(tenant, ref):
            await entry.clear()
            logger.debug(
                "Replication cache cleared %s for tenant %s (size %d)",
                entry.name,
                entry.tenant,
                entry.size,
            )

    async def reset(self) -> None:
        """Reset statistics and clear every replica."""
        self.stats.reset()
        await self.clear()

    async def prune(self, tenant: str | None | TenantScope = ALL_TENANTS) -> int:
        """Clear least-recently-touched entries of tenants over their size budget.

        The budget of each tenant is the total size divided by the number of
        tenants. Returns the number of bytes released.
        """
        tenant_caches = self._tenant_caches(tenant)
        if not tenant_caches:
            return 0
        budget = self.options.size / max(len(self.tenants.values()), 1)
        released = 0
        for tenant_cache in tenant_caches:
            diff = tenant_cache.size() - budget
            if diff <= 0:
                continue
            logger.debug(
                "Replication cache exceeds limit for tenant %s by %d bytes",
                tenant_cache.tenant,
                diff,
            )
            for entry in sorted(tenant_cache.entries.values(), key=lambda e: e.touched):
                if diff <= 0:
                    break
                if entry.size <= 0:
                    continue
                size = entry.size
                logger.debug(
                    "Replication cache prunes %s for tenant %s (%d bytes)",
                    entry.name,
                    tenant_cache.tenant,
                    size,
                )
                await entry.clear()
                diff -= size
                released += size
        return released

    def size(
        self, tenant: str | None | TenantScope = ALL_TENANTS, ref: str | None = None
    ) -> int:
        """Bytes held by entries, for one tenant or ALL_TENANTS."""
        return sum(entry.size for entry in self._entries(tenant, ref))

    async def tenant_size(self, tenant: str | None) -> int:
        """Size of the tenant's whole replica database in bytes (0 when not provisioned)."""
        tenant_cache = self.tenants.get(tenant)
        if tenant_cache is None:
            return 0
        return await tenant_cache.store.total_size()

    def entry(self, tenant: str | None, ref: str) -> CacheEntry | None:
        tenant_cache = self.tenants.get(tenant)
        return tenant_cache.entry(ref) if tenant_cache else None

    def entries(self, tenant: str | None | TenantScope = ALL_TENANTS) -> list[CacheEntry]:
        return self._entries(tenant, None)

    def revive(self, tenant: str | None, ref: str) -> bool:
        """Reset an INVALID entry; returns False when there is nothing to revive."""
        entry = self.entry(tenant, ref)
        return entry.revive() if entry else False

    def stats_snapshot(self) -> dict[str, Any]:
        return self.stats.snapshot()

    async def log_stats(self) -> None:
        logger.info("Replication cache statistics %s", self.stats_snapshot())
        logger.info("Replication cache size %d", self.size())
