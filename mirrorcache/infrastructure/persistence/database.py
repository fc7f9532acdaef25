"""Persistence: async engines for the primary store and replica stores.

The primary engine is created from settings.database_url; replica engines
are embedded SQLite databases through aiosqlite. In-memory replica engines
use a StaticPool so every checkout sees the same database (one connection,
serialized by the replica store's lock).

When the primary is PostgreSQL, transactions set app.current_tenant_id from
the request context so row-level security policies restrict rows to the
current tenant.
"""

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from mirrorcache.core.config import Settings

logger = logging.getLogger(__name__)


def create_primary_engine(settings: Settings) -> AsyncEngine:
    """Create the primary store engine from settings."""
    connect_args: dict[str, Any] = {}
    kwargs: dict[str, Any] = {}
    if settings.database_url.startswith("postgresql"):
        connect_args["command_timeout"] = 60
        kwargs.update(pool_pre_ping=True, pool_size=20, max_overflow=30, pool_recycle=3600)
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        connect_args=connect_args,
        **kwargs,
    )


def create_replica_engine(path: Path | None, echo: bool = False) -> AsyncEngine:
    """Create an aiosqlite engine for a replica store.

    Args:
        path: Database file, or None for an in-memory database.
        echo: Log emitted SQL.
    """
    logger.debug("Creating replica engine for %s", path or "in-memory store")
    if path is None:
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=echo)

    @event.listens_for(engine.sync_engine, "connect")
    def _configure_sqlite(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=OFF")
        cursor.close()

    return engine


async def set_tenant_context(conn: AsyncConnection, tenant_id: str | None) -> None:
    """Scope a PostgreSQL transaction to a tenant for row-level security.

    set_config(..., true) is the bound-parameter form of SET LOCAL; the
    setting ends with the transaction. Other dialects are left untouched.
    """
    if not tenant_id or conn.dialect.name != "postgresql":
        return
    await conn.execute(
        text("SELECT set_config('app.current_tenant_id', :tenant_id, true)"),
        {"tenant_id": tenant_id},
    )
