"""Primary data service over an SQLAlchemy async engine.

Every run() executes in its own transaction; loads open one transaction
for a whole entity copy so chunk reads and the final count see the same
snapshot.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from mirrorcache.application.interfaces.data_service import RequestContext
from mirrorcache.domain.model import DataModel
from mirrorcache.domain.query import Query
from mirrorcache.infrastructure.persistence.database import set_tenant_context
from mirrorcache.infrastructure.persistence.query_compiler import QueryCompiler


class SqlTransaction:
    """Open primary-store transaction bound to a request context."""

    def __init__(
        self, conn: AsyncConnection, compiler: QueryCompiler, context: RequestContext
    ) -> None:
        self.conn = conn
        self.compiler = compiler
        self.context = context

    async def run(self, query: Query) -> Any:
        return await self.compiler.execute(self.conn, query, self.context.locale)


class SqlDataService:
    """DataService implementation for the primary store."""

    def __init__(self, engine: AsyncEngine, model: DataModel) -> None:
        self.engine = engine
        self.model = model
        self.compiler = QueryCompiler(model)

    @asynccontextmanager
    async def transaction(self, context: RequestContext) -> AsyncIterator[SqlTransaction]:
        """Begin a transaction; commits on success, rolls back on exception."""
        async with self.engine.begin() as conn:
            await set_tenant_context(conn, context.tenant)
            yield SqlTransaction(conn, self.compiler, context)

    async def run(self, query: Query, context: RequestContext) -> Any:
        async with self.transaction(context) as tx:
            return await tx.run(query)
