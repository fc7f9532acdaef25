"""Tenant context for request-scoped store access.

Middleware (or the primary data service, for internal loads) sets the
current tenant in this context variable so that primary-store sessions can
run SET LOCAL app.current_tenant_id and row-level security applies.
"""

from contextvars import ContextVar

# Current tenant ID for the request (set by middleware, read by DB session setup).
current_tenant_id: ContextVar[str | None] = ContextVar(
    "current_tenant_id", default=None
)

# Current request locale (set by middleware, used for localized reads).
current_locale: ContextVar[str | None] = ContextVar("current_locale", default=None)


def set_tenant_id(tenant_id: str | None) -> None:
    """Set the current tenant ID for this context (e.g. request)."""
    current_tenant_id.set(tenant_id)


def get_tenant_id() -> str | None:
    """Return the current tenant ID or None for the default tenant."""
    return current_tenant_id.get()


def set_locale(locale: str | None) -> None:
    """Set the current request locale."""
    current_locale.set(locale)


def get_locale() -> str | None:
    """Return the current request locale, if any."""
    return current_locale.get()
