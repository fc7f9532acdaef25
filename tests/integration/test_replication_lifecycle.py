"""Entry lifecycle: preload, TTL expiry, clear, prune, retries and disk stores."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import pytest

from mirrorcache.application.interfaces.data_service import RequestContext
from mirrorcache.domain.enums import ALL_TENANTS, ElementType, EntryStatus
from mirrorcache.domain.model import DataModel, Element, Entity, ReplicationPolicy
from mirrorcache.domain.query import Column, Func, Query, RawQuery, Select
from mirrorcache.infrastructure.exceptions import ConsistencyMismatchException
from mirrorcache.infrastructure.persistence.sql_service import SqlDataService, SqlTransaction


class MiscountingTransaction:
    """Primary transaction whose row counts are off by one."""

    def __init__(self, inner: SqlTransaction) -> None:
        self.inner = inner

    async def run(self, query: Query) -> Any:
        result = await self.inner.run(query)
        if isinstance(result, dict) and "count" in result:
            return {"count": result["count"] + 1}
        return result


class MiscountingService:
    def __init__(self, inner: SqlDataService) -> None:
        self.inner = inner

    @asynccontextmanager
    async def transaction(self, context: RequestContext) -> AsyncIterator[MiscountingTransaction]:
        async with self.inner.transaction(context) as tx:
            yield MiscountingTransaction(tx)

    async def run(self, query: Query, context: RequestContext) -> Any:
        return await self.inner.run(query, context)


async def fallback() -> str:
    return "primary"


def count_column() -> Column:
    return Column(Func("count"), "count")


async def test_ttl_expiry_reloads_fresh_rows(make_cache, service_for, primary) -> None:
    cache = await make_cache(ttl=0.2)
    service = service_for(cache)
    assert len(await service.run(Select.of("Authors"), RequestContext())) == 5

    await asyncio.sleep(0.5)
    await cache.prepared()
    entry = cache.entry(None, "Authors")
    assert entry.status is EntryStatus.OPEN
    assert entry.loaded_at is None

    await primary.run(RawQuery('DELETE FROM "Authors" WHERE "ID" > 2'), RequestContext())
    assert len(await service.run(Select.of("Authors"), RequestContext())) == 2
    assert entry.status is EntryStatus.READY


async def test_entity_ttl_overrides_default(make_cache, service_for, entities) -> None:
    for entity in entities:
        if entity.name == "Genres":
            entity.replicate = ReplicationPolicy(static=True, ttl=0.1)
    cache = await make_cache(model=DataModel(entities), ttl=60)
    await service_for(cache).run(Select.of("Genres"), RequestContext())
    await service_for(cache).run(Select.of("Authors"), RequestContext())
    await asyncio.sleep(0.3)
    await cache.prepared()
    assert cache.entry(None, "Genres").status is EntryStatus.OPEN
    assert cache.entry(None, "Authors").status is EntryStatus.READY


async def test_clear_forces_reload(make_cache, service_for, counting_primary) -> None:
    cache = await make_cache(primary=counting_primary)
    service = service_for(cache)
    await service.run(Select.of("Authors"), RequestContext(tenant="t1"))
    await service.run(Select.of("Authors"), RequestContext(tenant="t2"))
    assert counting_primary.transactions == 2

    await cache.clear("t1", "Authors")
    assert cache.entry("t1", "Authors").status is EntryStatus.OPEN
    assert cache.entry("t2", "Authors").status is EntryStatus.READY

    await service.run(Select.of("Authors"), RequestContext(tenant="t1"))
    assert counting_primary.transactions == 3
    assert cache.entry("t1", "Authors").status is EntryStatus.READY


async def test_clear_without_tenant_covers_all_tenants(make_cache, service_for) -> None:
    cache = await make_cache()
    service = service_for(cache)
    await service.run(Select.of("Authors"), RequestContext(tenant="t1"))
    await service.run(Select.of("Books"), RequestContext())
    await cache.clear()
    assert {e.status for e in cache.entries()} == {EntryStatus.OPEN}


async def test_clear_of_default_tenant_keeps_other_tenants(make_cache, service_for) -> None:
    cache = await make_cache()
    service = service_for(cache)
    await service.run(Select.of("Authors"), RequestContext(tenant="t1"))
    await service.run(Select.of("Authors"), RequestContext())

    await cache.clear(None)
    assert cache.entry(None, "Authors").status is EntryStatus.OPEN
    assert cache.entry("t1", "Authors").status is EntryStatus.READY

    await cache.clear(ALL_TENANTS, "Authors")
    assert cache.entry("t1", "Authors").status is EntryStatus.OPEN


async def test_clear_of_new_entry_is_a_no_op(make_cache) -> None:
    cache = await make_cache(auto=False)
    await cache.load(None, ["Authors"])
    await cache.clear(None, "Authors")
    assert cache.entry(None, "Authors").status is EntryStatus.NEW


async def test_reset_clears_statistics_and_entries(make_cache, service_for) -> None:
    cache = await make_cache()
    await service_for(cache).run(Select.of("Authors"), RequestContext())
    await cache.reset()
    assert cache.stats.hits == 0
    assert cache.stats.counts == {}
    assert cache.entry(None, "Authors").status is EntryStatus.OPEN


async def test_prune_releases_least_recently_touched(make_cache) -> None:
    cache = await make_cache(size=1000, prune=False)
    assert await cache.preload(None, ["Pages"]) is EntryStatus.READY
    pages = cache.entry(None, "Pages")
    size = pages.size
    assert size > 0
    assert cache.size() == size

    assert await cache.prune() == size
    assert pages.status is EntryStatus.OPEN
    assert pages.size == 0
    assert await cache.prune() == 0


async def test_prune_within_budget_keeps_entries(make_cache) -> None:
    cache = await make_cache(prune=False)
    await cache.preload(None, ["Pages"])
    assert await cache.prune() == 0
    assert cache.entry(None, "Pages").status is EntryStatus.READY


async def test_load_triggers_prune(make_cache) -> None:
    cache = await make_cache(size=1000)
    await cache.preload(None, ["Pages"])
    await cache.prepared()
    assert cache.entry(None, "Pages").status is EntryStatus.OPEN
    assert cache.size() == 0


async def test_prune_of_unknown_tenant(make_cache) -> None:
    cache = await make_cache()
    assert await cache.prune("nobody") == 0


async def test_preload_expands_views_and_texts(make_cache) -> None:
    cache = await make_cache(auto=False)
    assert await cache.preload(None, ["BookTitles"]) is EntryStatus.READY
    assert cache.entry(None, "Books").status is EntryStatus.READY
    assert cache.entry(None, "Books.texts").status is EntryStatus.READY
    assert cache.entry(None, "BookTitles") is None


async def test_preload_outside_scope_is_not_ready(make_cache) -> None:
    cache = await make_cache()
    assert await cache.preload(None, ["Quotes"]) is EntryStatus.NOT_READY
    assert len(cache.tenants) == 0


async def test_preload_routes_static_entities_to_default_tenant(make_cache) -> None:
    cache = await make_cache()
    assert await cache.preload("t1", ["Authors", "Genres"]) is EntryStatus.READY
    assert cache.entry("t1", "Authors").status is EntryStatus.READY
    assert cache.entry(None, "Genres").status is EntryStatus.READY
    assert cache.entry("t1", "Genres") is None


async def test_preload_policy_warms_after_read(make_cache, service_for, entities) -> None:
    for entity in entities:
        if entity.name == "Authors":
            entity.replicate = ReplicationPolicy(preload=True)
    cache = await make_cache(model=DataModel(entities), preload=True)
    await service_for(cache).run(Select.of("Books"), RequestContext(tenant="t1"))
    await cache.prepared()
    assert cache.entry("t1", "Authors").status is EntryStatus.READY
    assert cache.entry("t1", "Pages") is None


async def test_entity_without_auto_waits_for_preload(
    make_cache, service_for, entities, primary_engine
) -> None:
    for entity in entities:
        if entity.name == "Genres":
            entity.replicate = ReplicationPolicy(static=True, auto=False)
    variant = DataModel(entities)
    cache = await make_cache(model=variant, primary=SqlDataService(primary_engine, variant))
    service = service_for(cache)
    await service.run(Select.of("Genres"), RequestContext())
    assert cache.stats.missed == 1
    assert cache.entry(None, "Genres").status is EntryStatus.NEW

    assert await cache.preload(None, ["Genres"]) is EntryStatus.READY
    await service.run(Select.of("Genres"), RequestContext())
    assert cache.stats.used == 1


async def test_failed_loads_exhaust_retry_budget(make_cache, entities, primary_engine) -> None:
    """Reviews is replicated but missing on the primary, so every load fails."""
    entities.append(
        Entity.define(
            "Reviews",
            [Element("ID", ElementType.INTEGER, key=True), Element("text")],
            replicate=ReplicationPolicy(),
        )
    )
    variant = DataModel(entities)
    cache = await make_cache(
        model=variant, primary=SqlDataService(primary_engine, variant), retries=1
    )
    query = Select.of("Reviews")

    assert await cache.read(query, RequestContext(), fallback) == "primary"
    entry = cache.entry(None, "Reviews")
    assert entry.status is EntryStatus.FAILED
    assert entry.failures == 1

    assert await cache.read(query, RequestContext(), fallback) == "primary"
    assert entry.status is EntryStatus.INVALID
    assert cache.stats.errors == 2

    assert await cache.read(query, RequestContext(), fallback) == "primary"
    assert cache.stats.errors == 2
    assert cache.stats.missed == 3

    assert cache.revive(None, "Reviews") is True
    assert entry.status is EntryStatus.FAILED
    assert entry.failures == 0
    assert cache.revive(None, "Reviews") is False
    assert cache.revive(None, "Authors") is False


async def test_count_mismatch_fails_the_load(make_cache, primary) -> None:
    cache = await make_cache(primary=MiscountingService(primary))
    assert await cache.load(None, ["Authors"]) is EntryStatus.NOT_READY
    entry = cache.entry(None, "Authors")
    assert entry.status is EntryStatus.FAILED
    assert isinstance(entry.prepared.exception(), ConsistencyMismatchException)
    assert cache.stats.errors == 1


async def test_count_mismatch_ignored_without_validation(make_cache, primary) -> None:
    cache = await make_cache(primary=MiscountingService(primary), validate_load=False)
    assert await cache.load(None, ["Authors"]) is EntryStatus.READY


async def test_small_chunks_copy_every_row(make_cache, counting_primary) -> None:
    cache = await make_cache(primary=counting_primary, chunk_size=7)
    assert await cache.load(None, ["Books"]) is EntryStatus.READY
    store = cache.tenants.get(None).store
    rows = await store.run(Select.of("Books", "ID"), RequestContext())
    assert sorted(r["ID"] for r in rows) == list(range(1, 101))
    assert counting_primary.transactions == 1


async def test_disk_stores_copy_the_template(
    make_cache, service_for, tmp_path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    cache = await make_cache(database="data.sqlite")
    directory = tmp_path / "temp" / "db" / "default"
    assert (directory / "data-template.sqlite").exists()

    service = service_for(cache)
    assert len(await service.run(Select.of("Books"), RequestContext())) == 100
    assert len(await service.run(Select.of("Books"), RequestContext(tenant="t1"))) == 100
    assert (directory / "data.sqlite").exists()
    assert (directory / "data-t1.sqlite").exists()
    assert await cache.tenant_size(None) > 0
    assert await cache.tenant_size("t2") == 0


async def test_entry_description(make_cache) -> None:
    cache = await make_cache()
    await cache.load("t1", ["Authors"])
    described = cache.entry("t1", "Authors").describe()
    assert described["entity"] == "Authors"
    assert described["tenant"] == "t1"
    assert described["status"] == "READY"
    assert described["failures"] == 0
    assert described["loaded_at"] is not None


async def test_shutdown_closes_tenant_stores(make_cache, service_for) -> None:
    cache = await make_cache()
    await service_for(cache).run(Select.of("Authors"), RequestContext(tenant="t1"))
    store = cache.tenants.get("t1").store
    await cache.shutdown()
    assert len(cache.tenants) == 0
    assert not store.is_open


async def test_periodic_prune_loop(make_cache) -> None:
    cache = await make_cache(size=1000, prune=False, check_interval=0.1)
    await cache.preload(None, ["Pages"])
    await asyncio.sleep(0.4)
    assert cache.entry(None, "Pages").status is EntryStatus.OPEN


async def test_books_read_clear_and_reread(make_cache, service_for) -> None:
    """READY -> OPEN on clear, reloaded by the next read and served from the replica."""
    cache = await make_cache()
    service = service_for(cache)
    await service.run(Select.of("Books"), RequestContext())
    assert (cache.stats.used, cache.stats.missed) == (1, 0)
    store = cache.tenants.get(None).store
    count = await store.run(Select.of("Books", count_column(), one=True), RequestContext())
    assert count == {"count": 100}

    await cache.clear(None, "Books")
    assert cache.entry(None, "Books").status is EntryStatus.OPEN
    await service.run(Select.of("Books"), RequestContext())
    assert cache.entry(None, "Books").status is EntryStatus.READY
    assert cache.stats.used == 2
