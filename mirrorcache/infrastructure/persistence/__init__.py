"""Persistence: engines, query compilation, primary service and replica stores."""

from mirrorcache.infrastructure.persistence.database import (
    create_primary_engine,
    create_replica_engine,
)
from mirrorcache.infrastructure.persistence.query_compiler import (
    CompiledQuery,
    QueryCompiler,
    chunk_query,
    count_query,
)
from mirrorcache.infrastructure.persistence.replica_store import (
    ReplicaStore,
    ReplicaTransaction,
    store_path,
)
from mirrorcache.infrastructure.persistence.sql_service import SqlDataService, SqlTransaction

__all__ = [
    "CompiledQuery",
    "QueryCompiler",
    "ReplicaStore",
    "ReplicaTransaction",
    "SqlDataService",
    "SqlTransaction",
    "chunk_query",
    "count_query",
    "create_primary_engine",
    "create_replica_engine",
    "store_path",
]
