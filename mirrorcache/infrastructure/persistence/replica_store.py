"""Tenant replica store: an embedded SQLite database holding replicated rows.

One store per tenant (plus the template store in disk deploy mode). Access
is serialized by a per-store asyncio.Lock held for the lifetime of each
transaction, so a load's delete-and-copy is never interleaved with reads.
Template copies go through a temp file and an atomic rename.
"""

import asyncio
import logging
import os
import re
import tempfile
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
import sqlalchemy as sa
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from mirrorcache.application.interfaces.data_service import RequestContext
from mirrorcache.core.config import ReplicationOptions
from mirrorcache.core.constants import EMPTY_RELATION_BYTES, FILE_COPY_CHUNK_SIZE
from mirrorcache.domain.model import DataModel
from mirrorcache.domain.query import Query
from mirrorcache.infrastructure.exceptions import StoreProvisionException
from mirrorcache.infrastructure.persistence.database import create_replica_engine
from mirrorcache.infrastructure.persistence.query_compiler import QueryCompiler, count_query

logger = logging.getLogger(__name__)

# Tenant ids become part of replica file names.
_TENANT_FILE_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


def store_directory(options: ReplicationOptions) -> Path:
    """Directory of the replica files: (temp dir or cwd) / base_dir / name / group."""
    root = Path(tempfile.gettempdir()) if options.tmp_dir else Path.cwd()
    return root / options.base_dir / options.name / options.group


def store_path(options: ReplicationOptions, tenant: str | None) -> Path | None:
    """Replica file of a tenant, or None for in-memory stores.

    The default tenant uses the configured file name; other tenants (and the
    template) insert "-<tenant>" before the extension.

    Raises:
        StoreProvisionException: If the tenant id is not usable in a file name.
    """
    if options.in_memory:
        return None
    if tenant is None:
        return store_directory(options) / options.database
    if not _TENANT_FILE_RE.fullmatch(tenant):
        raise StoreProvisionException(tenant, "tenant id is not a valid file name component")
    stem, ext = os.path.splitext(options.database)
    return store_directory(options) / f"{stem}-{tenant}{ext}"


async def copy_store_file(source: Path, target: Path) -> None:
    """Copy a store file via a temp file in the target directory and an atomic rename."""
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(
        dir=target.parent,
        prefix=".tmp_",
        suffix=target.suffix,
    )
    os.close(temp_fd)
    try:
        async with aiofiles.open(source, "rb") as src, aiofiles.open(temp_path, "wb") as dst:
            while True:
                chunk = await src.read(FILE_COPY_CHUNK_SIZE)
                if not chunk:
                    break
                await dst.write(chunk)
        await aiofiles.os.replace(temp_path, target)
    finally:
        if Path(temp_path).exists():
            await aiofiles.os.remove(temp_path)


class ReplicaTransaction:
    """Open replica transaction: bulk row operations and descriptor reads."""

    def __init__(self, conn: AsyncConnection, store: "ReplicaStore") -> None:
        self.conn = conn
        self.store = store

    async def delete_all(self, entity: str) -> None:
        await self.conn.execute(sa.delete(self.store.model.table(entity)))

    async def insert(self, entity: str, rows: list[dict[str, Any]]) -> int:
        """Insert rows and return how many the store reports as inserted."""
        if not rows:
            return 0
        if self.conn.dialect.supports_sane_multi_rowcount:
            result = await self.conn.execute(sa.insert(self.store.model.table(entity)), rows)
            if result.rowcount >= 0:
                return result.rowcount
        before = await self.count(entity)
        await self.conn.execute(sa.insert(self.store.model.table(entity)), rows)
        return await self.count(entity) - before

    async def count(self, entity: str) -> int:
        row = await self.run(count_query(entity))
        return int(row["count"]) if row else 0

    async def relation_size(self, entity: str) -> int:
        """Bytes used by the entity's table; one page or less counts as empty.

        Uses the dbstat virtual table; SQLite builds without it fall back to
        the summed length of the stored values.
        """
        table = self.store.model.table(entity)
        try:
            result = await self.conn.execute(
                sa.text("SELECT sum(pgsize) FROM dbstat WHERE name = :name"),
                {"name": table.name},
            )
            size = result.scalar() or 0
        except OperationalError:
            logger.debug("dbstat unavailable, estimating size of %s from values", entity)
            lengths = [sa.func.coalesce(sa.func.length(c), 0) for c in table.c]
            result = await self.conn.execute(
                sa.select(sa.func.sum(sum(lengths[1:], lengths[0])))
            )
            return int(result.scalar() or 0)
        return 0 if size <= EMPTY_RELATION_BYTES else int(size)

    async def run(self, query: Query, locale: str | None = None) -> Any:
        return await self.store.compiler.execute(self.conn, query, locale)


class ReplicaStore:
    """SQLite replica of a subset of the data model for one tenant."""

    def __init__(
        self,
        model: DataModel,
        path: Path | None,
        tenant: str | None = None,
        echo: bool = False,
    ) -> None:
        self.model = model
        self.path = path
        self.tenant = tenant
        self.echo = echo
        self.compiler = QueryCompiler(model)
        self.lock = asyncio.Lock()
        self._engine: AsyncEngine | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StoreProvisionException(self.tenant, "replica store is not open")
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self, template: Path | None = None) -> None:
        """Open the store, copying the template file first when given.

        Raises:
            StoreProvisionException: If the file cannot be copied or opened.
        """
        try:
            if self.path is not None:
                if template is not None:
                    await copy_store_file(template, self.path)
                else:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
            self._engine = create_replica_engine(self.path, self.echo)
            async with self._engine.connect() as conn:
                await conn.execute(sa.text("SELECT 1"))
        except StoreProvisionException:
            raise
        except Exception as e:
            raise StoreProvisionException(self.tenant, str(e)) from e

    async def deploy(self, entities: Iterable[str]) -> None:
        """Create the tables of the given base entities (missing ones only)."""
        tables = self.model.subset_metadata(entities)
        async with self.lock:
            async with self.engine.begin() as conn:
                await conn.run_sync(
                    lambda sync_conn: self.model.metadata.create_all(
                        sync_conn, tables=tables, checkfirst=True
                    )
                )

    async def ensure_table(self, entity: str) -> None:
        await self.deploy([entity])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[ReplicaTransaction]:
        """Exclusive replica transaction; commits on success, rolls back on exception."""
        async with self.lock:
            async with self.engine.begin() as conn:
                yield ReplicaTransaction(conn, self)

    async def run(self, query: Query, context: RequestContext) -> Any:
        async with self.transaction() as tx:
            return await tx.run(query, context.locale)

    async def total_size(self) -> int:
        """Bytes of the whole replica database (page_count * page_size)."""
        async with self.lock:
            async with self.engine.connect() as conn:
                page_count = (await conn.execute(sa.text("PRAGMA page_count"))).scalar() or 0
                page_size = (await conn.execute(sa.text("PRAGMA page_size"))).scalar() or 0
        return int(page_count) * int(page_size)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
