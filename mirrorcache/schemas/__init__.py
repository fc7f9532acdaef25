"""Pydantic request/response schemas for the API."""

from mirrorcache.schemas.health import HealthResponse, ReadinessResponse
from mirrorcache.schemas.replication import (
    ClearRequest,
    MessageResponse,
    PreloadRequest,
    PreloadResponse,
    PruneResponse,
    ReplicationEntryResponse,
    ReplicationSizeResponse,
    ReplicationStatsResponse,
    ReviveRequest,
    ReviveResponse,
)

__all__ = [
    "ClearRequest",
    "HealthResponse",
    "MessageResponse",
    "PreloadRequest",
    "PreloadResponse",
    "PruneResponse",
    "ReadinessResponse",
    "ReplicationEntryResponse",
    "ReplicationSizeResponse",
    "ReplicationStatsResponse",
    "ReviveRequest",
    "ReviveResponse",
]
