"""HTTP middleware: tenant and locale request context.

Applied in main app. Import and use from mirrorcache.main.
"""

from mirrorcache.middleware.tenant_context import TenantContextMiddleware

__all__ = ["TenantContextMiddleware"]
