"""ReplicaStore: provisioning, bulk row operations and sizes."""

from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from mirrorcache.application.interfaces.data_service import RequestContext
from mirrorcache.domain.model import DataModel
from mirrorcache.domain.query import RawQuery, Select
from mirrorcache.infrastructure.exceptions import StoreProvisionException
from mirrorcache.infrastructure.persistence.replica_store import ReplicaStore

AUTHORS = [{"ID": i, "name": f"Author {i}"} for i in range(1, 6)]


def _table_names(rows: list[dict]) -> list[str]:
    return sorted(row["name"] for row in rows)


async def test_closed_store_has_no_engine(model: DataModel) -> None:
    store = ReplicaStore(model, None, "t1")
    assert not store.is_open
    with pytest.raises(StoreProvisionException):
        store.engine


async def test_deploy_insert_count_and_read(model: DataModel) -> None:
    store = ReplicaStore(model, None)
    await store.open()
    try:
        await store.deploy(["Authors", "Books"])
        async with store.transaction() as tx:
            assert await tx.insert("Authors", AUTHORS) == 5
            assert await tx.insert("Authors", []) == 0
            assert await tx.count("Authors") == 5
        rows = await store.run(Select.of("Authors", "name", one=True), RequestContext())
        assert rows == {"name": "Author 1"}
        async with store.transaction() as tx:
            await tx.delete_all("Authors")
            assert await tx.count("Authors") == 0
    finally:
        await store.close()
    assert not store.is_open


async def test_deploy_is_idempotent(model: DataModel) -> None:
    store = ReplicaStore(model, None)
    await store.open()
    try:
        await store.deploy(["Authors"])
        await store.ensure_table("Authors")
        await store.ensure_table("Genres")
        tables = await store.run(
            RawQuery("SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"),
            RequestContext(),
        )
        assert _table_names(tables) == ["Authors", "Genres"]
    finally:
        await store.close()


async def test_insert_into_missing_table_fails(model: DataModel) -> None:
    store = ReplicaStore(model, None)
    await store.open()
    try:
        with pytest.raises(OperationalError):
            async with store.transaction() as tx:
                await tx.insert("Authors", AUTHORS)
    finally:
        await store.close()


async def test_failed_transaction_rolls_back(model: DataModel) -> None:
    store = ReplicaStore(model, None)
    await store.open()
    try:
        await store.deploy(["Authors"])
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.insert("Authors", AUTHORS)
                raise RuntimeError("abort")
        async with store.transaction() as tx:
            assert await tx.count("Authors") == 0
    finally:
        await store.close()


async def test_sizes(model: DataModel) -> None:
    """Small tables count as empty; larger ones report their bytes."""
    store = ReplicaStore(model, None)
    await store.open()
    try:
        await store.deploy(["Authors", "Pages"])
        pages = [
            {"ID": i, "book_ID": 1, "number": i, "content": "x" * 500}
            for i in range(1, 41)
        ]
        async with store.transaction() as tx:
            await tx.insert("Pages", pages)
            assert await tx.relation_size("Pages") > 0
            await tx.delete_all("Pages")
            assert await tx.relation_size("Pages") == 0
        assert await store.total_size() > 0
    finally:
        await store.close()


async def test_open_from_template_file(model: DataModel, tmp_path: Path) -> None:
    template_path = tmp_path / "data-template.sqlite"
    template = ReplicaStore(model, template_path, "template")
    await template.open()
    await template.deploy(["Authors"])
    await template.close()

    store = ReplicaStore(model, tmp_path / "tenants" / "data-t1.sqlite", "t1")
    await store.open(template_path)
    try:
        async with store.transaction() as tx:
            assert await tx.count("Authors") == 0
            await tx.insert("Authors", AUTHORS)
    finally:
        await store.close()
    assert (tmp_path / "tenants" / "data-t1.sqlite").exists()
    assert sorted(p.name for p in (tmp_path / "tenants").iterdir()) == ["data-t1.sqlite"]


async def test_open_from_missing_template_fails(model: DataModel, tmp_path: Path) -> None:
    store = ReplicaStore(model, tmp_path / "data-t1.sqlite", "t1")
    with pytest.raises(StoreProvisionException):
        await store.open(tmp_path / "missing.sqlite")
    assert not store.is_open
