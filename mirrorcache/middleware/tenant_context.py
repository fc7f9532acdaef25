"""Tenant context middleware.

Sets the current tenant ID and locale in context from the X-Tenant-ID and
Accept-Language headers so that reads are routed to the tenant's replica
and primary transactions can run SET LOCAL app.current_tenant_id.
"""

from __future__ import annotations

from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from mirrorcache.core.config import get_settings
from mirrorcache.core.tenant_context import set_locale, set_tenant_id


def _locale_from_header(value: str | None) -> str | None:
    """Return the first language tag of an Accept-Language value ("de-CH,de;q=0.9" -> "de-CH")."""
    if not value:
        return None
    tag = value.split(",")[0].split(";")[0].strip()
    return tag if tag and tag != "*" else None


def TenantContextMiddleware(app: Callable) -> Callable:
    """Set tenant and locale context from request headers before route runs."""

    class _Middleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next: Callable) -> Response:
            settings = get_settings()
            set_tenant_id(request.headers.get(settings.tenant_header_name) or None)
            set_locale(_locale_from_header(request.headers.get(settings.locale_header_name)))
            try:
                return await call_next(request)
            finally:
                set_tenant_id(None)
                set_locale(None)

    return _Middleware(app)
