"""Presentation-layer dependency injection.

Provides FastAPI Depends() for the replication cache built by the lifespan
and for the request context set by TenantContextMiddleware.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from mirrorcache.application.interfaces.data_service import RequestContext
from mirrorcache.core.tenant_context import get_locale, get_tenant_id
from mirrorcache.infrastructure.cache import ReplicationCache


def get_replication_cache(request: Request) -> ReplicationCache:
    """Replication cache from app state; 503 while the app is not started."""
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Replication cache not available")
    return cache


async def get_request_context() -> RequestContext:
    """Request context from the tenant and locale context variables."""
    return RequestContext(tenant=get_tenant_id(), locale=get_locale())


ReplicationCacheDep = Annotated[ReplicationCache, Depends(get_replication_cache)]
RequestContextDep = Annotated[RequestContext, Depends(get_request_context)]
