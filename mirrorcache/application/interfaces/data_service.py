"""Data service interfaces (ports) for the primary store and the replica.

Protocols define contracts that infrastructure implementations must fulfill
(DIP). The coordinator only sees DataService; SqlDataService and
ReplicaStore implement it over SQLAlchemy.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any, Protocol

from mirrorcache.domain.query import Query


@dataclass(frozen=True)
class RequestContext:
    """Immutable request scope passed with every read.

    tenant None is the unscoped default tenant.
    """

    tenant: str | None = None
    locale: str | None = None
    user: str | None = None

    def for_tenant(self) -> RequestContext:
        """Tenant-only context (used for background loads)."""
        return RequestContext(tenant=self.tenant)


class Transaction(Protocol):
    """Open store transaction able to run queries."""

    async def run(self, query: Query) -> Any:
        """Execute a query inside this transaction."""
        ...


class DataService(Protocol):
    """Transactional read service scoped to a request context."""

    async def run(self, query: Query, context: RequestContext) -> Any:
        """Execute a query in its own transaction and return rows.

        Returns:
            list of dict rows, or a dict / None for Select(one=True).
        """
        ...

    def transaction(
        self, context: RequestContext
    ) -> AbstractAsyncContextManager[Transaction]:
        """Open a transaction; commit on success, roll back on exception."""
        ...


# Continuation that serves a read from the primary store
NextHandler = Callable[[], Awaitable[Any]]

# Tenant activation predicate (sync or async)
ActivePredicate = Callable[[str | None], bool | Awaitable[bool]]
