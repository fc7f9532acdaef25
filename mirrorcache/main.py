"""FastAPI application entry point.

Wiring only: lifespan, exception handlers, middleware, routers.
No business logic here. See mirrorcache.core.lifespan and
mirrorcache.core.exception_handlers.

Settings are loaded inside create_app() so that tests can set env (and
optionally clear get_settings cache) before calling create_app(). Serve
with: uvicorn mirrorcache.main:create_app --factory
"""

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine

from mirrorcache.api.v1 import api_router
from mirrorcache.core.config import get_settings
from mirrorcache.core.exception_handlers import register_exception_handlers
from mirrorcache.core.lifespan import create_lifespan
from mirrorcache.domain.model import DataModel
from mirrorcache.middleware import TenantContextMiddleware


def create_app(
    model: DataModel | None = None,
    primary_engine: AsyncEngine | None = None,
) -> FastAPI:
    """Build and return the FastAPI application.

    Args:
        model: Data model; when omitted the lifespan imports settings.data_model.
        primary_engine: Primary store engine; when omitted the lifespan creates
            (and disposes) one from settings.database_url.
    """
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=create_lifespan,
    )
    app.state.model = model
    app.state.primary_engine = primary_engine

    register_exception_handlers(app)

    app.add_middleware(TenantContextMiddleware)

    app.include_router(api_router, prefix="/api/v1")

    return app
