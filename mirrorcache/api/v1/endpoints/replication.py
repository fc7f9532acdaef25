"""Replication cache administration: statistics, sizes, entries and maintenance.

Tenant-scoped routes act on the tenant of the request (X-Tenant-ID); without
the header they act on the default tenant, except clear and prune, which
then cover every tenant.
"""

import logging

from fastapi import APIRouter, Query

from mirrorcache.api.v1.dependencies import ReplicationCacheDep, RequestContextDep
from mirrorcache.application.interfaces.data_service import RequestContext
from mirrorcache.domain.enums import ALL_TENANTS, TenantScope
from mirrorcache.domain.exceptions import UnknownEntityException
from mirrorcache.infrastructure.cache import ReplicationCache
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

logger = logging.getLogger(__name__)

router = APIRouter()


def _check_entity(cache: ReplicationCache, name: str) -> str:
    """Raise UnknownEntityException (404) for names outside the model."""
    if name not in cache.model:
        raise UnknownEntityException(name)
    return name


def _maintenance_scope(context: RequestContext) -> str | TenantScope:
    """Request tenant, or every tenant when the request names none."""
    return context.tenant if context.tenant is not None else ALL_TENANTS


@router.get("/stats", response_model=ReplicationStatsResponse)
def get_stats(cache: ReplicationCacheDep) -> ReplicationStatsResponse:
    """Return the read routing statistics snapshot."""
    return ReplicationStatsResponse(**cache.stats_snapshot())


@router.get("/size", response_model=ReplicationSizeResponse)
async def get_size(
    cache: ReplicationCacheDep,
    context: RequestContextDep,
    entity: str | None = Query(None, description="Limit to one entity"),
) -> ReplicationSizeResponse:
    """Return bytes held by the request tenant's replica (optionally one entity)."""
    if entity is not None:
        _check_entity(cache, entity)
    tenant_cache = cache.tenants.get(context.tenant)
    return ReplicationSizeResponse(
        tenant=context.tenant,
        entity=entity,
        size=tenant_cache.size(entity) if tenant_cache else 0,
        database_size=await cache.tenant_size(context.tenant),
    )


@router.get("/entries", response_model=list[ReplicationEntryResponse])
def list_entries(
    cache: ReplicationCacheDep,
    context: RequestContextDep,
) -> list[ReplicationEntryResponse]:
    """List the request tenant's cache entries."""
    tenant_cache = cache.tenants.get(context.tenant)
    if tenant_cache is None:
        return []
    return [
        ReplicationEntryResponse(**entry.describe())
        for entry in tenant_cache.entries.values()
    ]


@router.post("/preload", response_model=PreloadResponse)
async def preload(
    body: PreloadRequest,
    cache: ReplicationCacheDep,
    context: RequestContextDep,
) -> PreloadResponse:
    """Load entities (views as their base entities) into the tenant replica and wait."""
    for name in body.entities:
        _check_entity(cache, name)
    status = await cache.preload(context.tenant, body.entities)
    logger.info(
        "Replication cache preload of %s for tenant %s: %s",
        body.entities,
        context.tenant or "default",
        status.value,
    )
    return PreloadResponse(status=status, entities=body.entities)


@router.post("/clear", response_model=MessageResponse)
async def clear(
    body: ClearRequest,
    cache: ReplicationCacheDep,
    context: RequestContextDep,
) -> MessageResponse:
    """Clear one entity or all entities; the replica reloads on next use."""
    if body.entity is not None:
        _check_entity(cache, body.entity)
    await cache.clear(_maintenance_scope(context), body.entity)
    return MessageResponse(message=f"Cleared {body.entity or 'all entities'}")


@router.post("/prune", response_model=PruneResponse)
async def prune(cache: ReplicationCacheDep, context: RequestContextDep) -> PruneResponse:
    """Clear least-recently-used entries of tenants over their size budget."""
    return PruneResponse(released=await cache.prune(_maintenance_scope(context)))


@router.post("/reset", response_model=MessageResponse)
async def reset(cache: ReplicationCacheDep) -> MessageResponse:
    """Reset statistics and clear every replica."""
    await cache.reset()
    return MessageResponse(message="Replication cache reset")


@router.post("/revive", response_model=ReviveResponse)
def revive(
    body: ReviveRequest,
    cache: ReplicationCacheDep,
    context: RequestContextDep,
) -> ReviveResponse:
    """Make an INVALID entry eligible for loading again."""
    _check_entity(cache, body.entity)
    return ReviveResponse(entity=body.entity, revived=cache.revive(context.tenant, body.entity))
