"""Tests for the replication cache administration endpoints."""

from fastapi import FastAPI
from httpx import AsyncClient

from mirrorcache.application.interfaces.data_service import RequestContext
from mirrorcache.domain.query import Select

BASE = "/api/v1/replication"
TENANT = {"X-Tenant-ID": "t1"}


async def test_stats_start_empty(client: AsyncClient) -> None:
    """GET /replication/stats returns zeroed counters on a fresh cache."""
    response = await client.get(f"{BASE}/stats")
    assert response.status_code == 200
    data = response.json()
    assert data["hits"] == 0
    assert data["ratio"] == 0.0
    assert data["counts"] == {}


async def test_stats_reflect_reads(app: FastAPI, client: AsyncClient) -> None:
    """Reads through the app's data service show up in the statistics."""
    service = app.state.data_service
    await service.run(Select.of("Authors"), RequestContext())
    await app.state.cache.prepared()
    await service.run(Select.of("Authors"), RequestContext())

    data = (await client.get(f"{BASE}/stats")).json()
    assert data["hits"] == 2
    assert data["counts"] == {"Authors": 2}
    assert data["used"] + data["missed"] == 2


async def test_preload_then_list_entries(client: AsyncClient) -> None:
    """POST /replication/preload waits for the load and entries show it READY."""
    response = await client.post(f"{BASE}/preload", json={"entities": ["Authors"]}, headers=TENANT)
    assert response.status_code == 200
    assert response.json() == {"status": "READY", "entities": ["Authors"]}

    entries = (await client.get(f"{BASE}/entries", headers=TENANT)).json()
    assert [(e["entity"], e["tenant"], e["status"]) for e in entries] == [("Authors", "t1", "READY")]
    assert entries[0]["loaded_at"] is not None

    assert (await client.get(f"{BASE}/entries")).json() == []


async def test_preload_of_view_loads_base_entities(client: AsyncClient) -> None:
    response = await client.post(f"{BASE}/preload", json={"entities": ["BookTitles"]})
    assert response.json()["status"] == "READY"
    entries = (await client.get(f"{BASE}/entries")).json()
    assert sorted(e["entity"] for e in entries) == ["Books", "Books.texts"]


async def test_preload_outside_scope_is_not_ready(client: AsyncClient) -> None:
    response = await client.post(f"{BASE}/preload", json={"entities": ["Quotes"]})
    assert response.status_code == 200
    assert response.json()["status"] == "NOT_READY"


async def test_preload_unknown_entity_returns_404(client: AsyncClient) -> None:
    """Names outside the data model are rejected with UNKNOWN_ENTITY."""
    response = await client.post(f"{BASE}/preload", json={"entities": ["Nope"]})
    assert response.status_code == 404
    data = response.json()
    assert data["error"] == "UNKNOWN_ENTITY"
    assert data["details"] == {"entity": "Nope"}


async def test_preload_empty_list_returns_422(client: AsyncClient) -> None:
    response = await client.post(f"{BASE}/preload", json={"entities": []})
    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_ERROR"


async def test_size_of_tenant_replica(client: AsyncClient) -> None:
    """GET /replication/size reports entry bytes and the whole database size."""
    empty = (await client.get(f"{BASE}/size", headers=TENANT)).json()
    assert empty == {"tenant": "t1", "entity": None, "size": 0, "database_size": 0}

    await client.post(f"{BASE}/preload", json={"entities": ["Pages"]}, headers=TENANT)
    data = (await client.get(f"{BASE}/size", params={"entity": "Pages"}, headers=TENANT)).json()
    assert data["tenant"] == "t1"
    assert data["entity"] == "Pages"
    assert data["size"] > 0
    assert data["database_size"] > 0


async def test_size_unknown_entity_returns_404(client: AsyncClient) -> None:
    response = await client.get(f"{BASE}/size", params={"entity": "Nope"})
    assert response.status_code == 404


async def test_clear_one_entity(client: AsyncClient) -> None:
    """POST /replication/clear empties the replica; the entry goes back to OPEN."""
    await client.post(f"{BASE}/preload", json={"entities": ["Authors"]}, headers=TENANT)
    response = await client.post(f"{BASE}/clear", json={"entity": "Authors"}, headers=TENANT)
    assert response.status_code == 200
    assert response.json() == {"message": "Cleared Authors"}
    entries = (await client.get(f"{BASE}/entries", headers=TENANT)).json()
    assert entries[0]["status"] == "OPEN"


async def test_clear_without_tenant_covers_every_tenant(client: AsyncClient) -> None:
    await client.post(f"{BASE}/preload", json={"entities": ["Authors"]}, headers=TENANT)
    await client.post(f"{BASE}/preload", json={"entities": ["Authors"]})
    response = await client.post(f"{BASE}/clear", json={})
    assert response.json() == {"message": "Cleared all entities"}
    for headers in (TENANT, {}):
        entries = (await client.get(f"{BASE}/entries", headers=headers)).json()
        assert [e["status"] for e in entries] == ["OPEN"]


async def test_prune_within_budget_releases_nothing(client: AsyncClient) -> None:
    await client.post(f"{BASE}/preload", json={"entities": ["Pages"]})
    response = await client.post(f"{BASE}/prune")
    assert response.status_code == 200
    assert response.json() == {"released": 0}


async def test_reset(app: FastAPI, client: AsyncClient) -> None:
    """POST /replication/reset zeroes statistics and clears replicas."""
    await app.state.data_service.run(Select.of("Authors"), RequestContext())
    await client.post(f"{BASE}/preload", json={"entities": ["Authors"]})
    response = await client.post(f"{BASE}/reset")
    assert response.json() == {"message": "Replication cache reset"}
    assert (await client.get(f"{BASE}/stats")).json()["hits"] == 0
    entries = (await client.get(f"{BASE}/entries")).json()
    assert [e["status"] for e in entries] == ["OPEN"]


async def test_revive_of_healthy_entry(client: AsyncClient) -> None:
    """Only INVALID entries can be revived."""
    await client.post(f"{BASE}/preload", json={"entities": ["Authors"]})
    response = await client.post(f"{BASE}/revive", json={"entity": "Authors"})
    assert response.status_code == 200
    assert response.json() == {"entity": "Authors", "revived": False}


async def test_revive_unknown_entity_returns_404(client: AsyncClient) -> None:
    response = await client.post(f"{BASE}/revive", json={"entity": "Nope"})
    assert response.status_code == 404
    assert response.json()["error"] == "UNKNOWN_ENTITY"
