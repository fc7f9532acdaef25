"""Replication cache administration schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from mirrorcache.domain.enums import EntryStatus


class ReplicationStatsResponse(BaseModel):
    """Read routing statistics of this process."""

    hits: int = Field(..., description="Reads the cache considered")
    used: int = Field(..., description="Reads served from a replica")
    missed: int = Field(..., description="Relevant reads delegated to the primary")
    errors: int = Field(..., description="Cache-side failures (read fell back)")
    ratio: float = Field(..., description="used / hits, rounded to two decimals")
    measure_total: float = Field(..., description="Sum of measured latency improvements (%)")
    measure_count: int = Field(..., description="Number of measured reads")
    measure_ratio: float = Field(..., description="Mean measured latency improvement (%)")
    counts: dict[str, int] = Field(default_factory=dict, description="Relevant reads per entity")
    search: dict[str, int] = Field(default_factory=dict, description="Search reads bypassed per entity")
    localized: dict[str, int] = Field(
        default_factory=dict, description="Localized reads bypassed per entity"
    )
    projections: dict[str, int] = Field(
        default_factory=dict, description="View reads bypassed per view"
    )
    not_relevant: dict[str, int] = Field(
        default_factory=dict, description="Out-of-scope entities that blocked a read"
    )


class ReplicationSizeResponse(BaseModel):
    """Replica size of the request tenant."""

    tenant: str | None = Field(None, description="Tenant (null = default tenant)")
    entity: str | None = Field(None, description="Entity filter, if any")
    size: int = Field(..., description="Bytes held by the selected entries")
    database_size: int = Field(..., description="Bytes of the tenant's whole replica database")


class ReplicationEntryResponse(BaseModel):
    """State of one cache entry."""

    entity: str
    tenant: str | None = None
    status: EntryStatus
    size: int
    failures: int
    touched: float = Field(..., description="Monotonic clock reading of the last use")
    loaded_at: datetime | None = None


class PreloadRequest(BaseModel):
    """Body of POST /replication/preload."""

    entities: list[str] = Field(..., min_length=1, description="Entities or views to load")


class PreloadResponse(BaseModel):
    status: EntryStatus = Field(..., description="READY when every entity was loaded")
    entities: list[str]


class ClearRequest(BaseModel):
    """Body of POST /replication/clear; without entity every entry is cleared."""

    entity: str | None = None


class ReviveRequest(BaseModel):
    entity: str


class ReviveResponse(BaseModel):
    entity: str
    revived: bool = Field(..., description="False when the entry was not INVALID")


class PruneResponse(BaseModel):
    released: int = Field(..., description="Bytes released")


class MessageResponse(BaseModel):
    message: str
