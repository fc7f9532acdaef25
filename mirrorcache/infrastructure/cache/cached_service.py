"""Read-through boundary: a DataService whose reads consult the replication cache."""

from contextlib import AbstractAsyncContextManager
from typing import Any

from mirrorcache.application.interfaces.data_service import (
    DataService,
    RequestContext,
    Transaction,
)
from mirrorcache.domain.query import Query
from mirrorcache.infrastructure.cache.replication_cache import ReplicationCache


class CachedDataService:
    """Wraps the primary service; run() goes through ReplicationCache.read.

    Transactions (and therefore writes) always go to the primary.
    """

    def __init__(self, primary: DataService, cache: ReplicationCache) -> None:
        self.primary = primary
        self.cache = cache

    async def run(self, query: Query, context: RequestContext) -> Any:
        return await self.cache.read(
            query, context, lambda: self.primary.run(query, context)
        )

    def transaction(self, context: RequestContext) -> AbstractAsyncContextManager[Transaction]:
        return self.primary.transaction(context)
