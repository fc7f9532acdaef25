"""Application configuration (settings and environment).

Single source of truth for all configuration. Uses pydantic-settings
with .env support. Replication cache options are flat REPLICATION_*
variables, grouped into a frozen ReplicationOptions model for the cache.
"""

from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mirrorcache.core.constants import DEFAULT_SERVICE, IN_MEMORY


class ReplicationOptions(BaseModel):
    """Options consumed by ReplicationCache.

    Durations are in seconds, sizes in bytes. Zero intervals disable the
    corresponding periodic task.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    name: str = DEFAULT_SERVICE
    group: str = "default"
    deploy: bool = True
    auto: bool = True
    wait: bool = False
    preload: bool = False
    search: bool = True
    measure: bool = False
    validate_load: bool = True
    prune: bool = True
    chunk_size: int = Field(default=1000, gt=0)
    retries: int = Field(default=3, ge=0)
    ttl: float = Field(default=1800.0, gt=0)
    size: int = Field(default=10 * 1024 * 1024, ge=0)
    check_interval: float = Field(default=0.0, ge=0)
    stats_interval: float = Field(default=0.0, ge=0)
    database: str = IN_MEMORY
    base_dir: str = "temp"
    tmp_dir: bool = False
    max_depth: int = Field(default=32, gt=0)

    @model_validator(mode="after")
    def validate_database(self) -> "ReplicationOptions":
        """Disk databases need a file name with an extension (tenant suffix goes before it)."""
        if self.database != IN_MEMORY and "." not in self.database:
            raise ValueError(
                f"replication database must be {IN_MEMORY!r} or a file name with extension, "
                f"got: {self.database!r}"
            )
        return self

    @property
    def in_memory(self) -> bool:
        """True when replica stores live in memory."""
        return self.database == IN_MEMORY


class Settings(BaseSettings):
    """Application settings loaded from environment and .env."""

    # App
    app_name: str = "mirrorcache"
    app_version: str = "1.0.0"
    debug: bool = False

    # Primary database (any SQLAlchemy async URL)
    database_url: str = "sqlite+aiosqlite:///./primary.sqlite"
    database_echo: bool = False

    # Data model, as "package.module:attribute" (a DataModel or a callable returning one)
    data_model: str | None = None

    # Request context
    tenant_header_name: str = "X-Tenant-ID"
    locale_header_name: str = "Accept-Language"

    # Replication cache
    replication_enabled: bool = True
    replication_name: str = DEFAULT_SERVICE
    replication_group: str = "default"
    replication_deploy: bool = True
    replication_auto: bool = True
    replication_wait: bool = False
    replication_preload: bool = False
    replication_search: bool = True
    replication_measure: bool = False
    replication_validate: bool = True
    replication_prune: bool = True
    replication_chunk_size: int = 1000
    replication_retries: int = 3
    replication_ttl: float = 1800.0
    replication_size: int = 10 * 1024 * 1024
    replication_check_interval: float = 0.0
    replication_stats_interval: float = 0.0
    replication_database: str = IN_MEMORY
    replication_base_dir: str = "temp"
    replication_tmp_dir: bool = False
    replication_max_depth: int = 32

    # OpenTelemetry
    telemetry_enabled: bool = False
    telemetry_exporter: str = "console"
    telemetry_otlp_endpoint: str | None = None
    telemetry_sample_rate: float = 1.0
    telemetry_environment: str = "development"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_telemetry(self) -> "Settings":
        """Validate exporter choice; OTLP needs an endpoint."""
        if self.telemetry_exporter not in ("console", "otlp", "none"):
            raise ValueError(
                f"telemetry_exporter must be 'console', 'otlp' or 'none', got: {self.telemetry_exporter!r}"
            )
        if self.telemetry_exporter == "otlp" and not self.telemetry_otlp_endpoint:
            raise ValueError("TELEMETRY_OTLP_ENDPOINT is required when telemetry_exporter is 'otlp'.")
        return self

    def replication_options(self) -> ReplicationOptions:
        """Build the cache options from the flat REPLICATION_* settings.

        Raises:
            pydantic.ValidationError: If a value is out of range (fatal at startup).
        """
        return ReplicationOptions(
            enabled=self.replication_enabled,
            name=self.replication_name,
            group=self.replication_group,
            deploy=self.replication_deploy,
            auto=self.replication_auto,
            wait=self.replication_wait,
            preload=self.replication_preload,
            search=self.replication_search,
            measure=self.replication_measure,
            validate_load=self.replication_validate,
            prune=self.replication_prune,
            chunk_size=self.replication_chunk_size,
            retries=self.replication_retries,
            ttl=self.replication_ttl,
            size=self.replication_size,
            check_interval=self.replication_check_interval,
            stats_interval=self.replication_stats_interval,
            database=self.replication_database,
            base_dir=self.replication_base_dir,
            tmp_dir=self.replication_tmp_dir,
            max_depth=self.replication_max_depth,
        )


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings (single instance per process).

    Validation runs on first call, not at import time. In tests, call
    get_settings.cache_clear() before overriding env vars so the next
    get_settings() uses the new values.

    Returns:
        Loaded and validated Settings instance.
    """
    return Settings()
