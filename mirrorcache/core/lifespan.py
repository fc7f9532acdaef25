"""Application lifespan: startup and shutdown.

Single place for all startup/shutdown logic. Used by main.py; no
business logic here, only wiring of infrastructure (primary engine,
replication cache, telemetry, engine dispose).
"""

import importlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from mirrorcache.core.config import Settings, get_settings
from mirrorcache.domain.exceptions import ModelDefinitionException
from mirrorcache.domain.model import DataModel
from mirrorcache.infrastructure.cache import CachedDataService, ReplicationCache
from mirrorcache.infrastructure.persistence.database import create_primary_engine
from mirrorcache.infrastructure.persistence.sql_service import SqlDataService
from mirrorcache.shared.telemetry.logging import setup_logging

logger = logging.getLogger(__name__)


def load_data_model(settings: Settings) -> DataModel:
    """Import the data model named by settings.data_model ("module:attribute").

    The attribute may be a DataModel or a zero-argument callable returning
    one. Without a configured model an empty model is used (nothing is
    replicated).

    Raises:
        ModelDefinitionException: If the reference cannot be imported or is not a model.
    """
    if not settings.data_model:
        logger.warning("No data model configured; replication cache has nothing in scope")
        return DataModel([])
    module_name, _, attribute = settings.data_model.partition(":")
    if not module_name or not attribute:
        raise ModelDefinitionException(
            f"DATA_MODEL must look like 'package.module:attribute', got: {settings.data_model!r}"
        )
    try:
        target = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise ModelDefinitionException(f"Cannot import data model {settings.data_model!r}: {e}") from e
    model = target() if callable(target) else target
    if not isinstance(model, DataModel):
        raise ModelDefinitionException(f"{settings.data_model!r} is not a DataModel")
    return model


@asynccontextmanager
async def create_lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run startup then yield; on exit run shutdown.

    Startup order: logging, data model, primary engine (unless one was
    handed to create_app), replication cache, telemetry (if enabled).
    Shutdown order: replication cache, telemetry, engine dispose (only an
    engine created here).
    """
    settings = get_settings()
    setup_logging()

    # ---- Startup ----
    model = getattr(app.state, "model", None)
    if model is None:
        model = load_data_model(settings)
        app.state.model = model

    engine = getattr(app.state, "primary_engine", None)
    owns_engine = engine is None
    if owns_engine:
        engine = create_primary_engine(settings)
        app.state.primary_engine = engine

    primary = SqlDataService(engine, model)
    cache = ReplicationCache(model, primary, settings.replication_options())
    await cache.start()
    app.state.primary = primary
    app.state.cache = cache
    app.state.data_service = CachedDataService(primary, cache)

    if settings.telemetry_enabled:
        from mirrorcache.shared.telemetry.telemetry import TelemetryConfig, set_telemetry

        telemetry = TelemetryConfig(
            service_name=settings.app_name,
            service_version=settings.app_version,
            enabled=True,
            environment=settings.telemetry_environment,
            replication_name=settings.replication_name,
            replication_group=settings.replication_group,
        )
        telemetry.setup_telemetry(
            exporter_type=settings.telemetry_exporter,
            otlp_endpoint=settings.telemetry_otlp_endpoint,
            sample_rate=settings.telemetry_sample_rate,
        )
        set_telemetry(telemetry)
        telemetry.instrument_fastapi(app)
        telemetry.instrument_sqlalchemy(engine)
        telemetry.instrument_logging()
        logger.info("Telemetry initialized")

    yield

    # ---- Shutdown ----
    await cache.shutdown()
    app.state.cache = None
    app.state.data_service = None

    from mirrorcache.shared.telemetry.telemetry import get_telemetry, set_telemetry

    telemetry_instance = get_telemetry()
    if telemetry_instance is not None:
        telemetry_instance.shutdown()
        set_telemetry(None)
        logger.info("Telemetry shutdown complete")

    if owns_engine:
        await engine.dispose()
        app.state.primary_engine = None
        logger.info("Database engine disposed")
