"""Tests for settings and replication cache options."""

import pytest
from pydantic import ValidationError

from mirrorcache.core.config import ReplicationOptions, Settings, get_settings
from mirrorcache.core.constants import IN_MEMORY


def test_replication_options_defaults() -> None:
    options = ReplicationOptions()
    assert options.enabled is True
    assert options.deploy is True
    assert options.wait is False
    assert options.search is True
    assert options.retries == 3
    assert options.chunk_size == 1000
    assert options.database == IN_MEMORY
    assert options.in_memory is True


def test_replication_options_are_frozen() -> None:
    options = ReplicationOptions()
    with pytest.raises(ValidationError):
        options.ttl = 5.0


def test_disk_database_needs_extension() -> None:
    """A file name without extension cannot carry a tenant suffix."""
    with pytest.raises(ValidationError):
        ReplicationOptions(database="replica")
    assert ReplicationOptions(database="data.sqlite").in_memory is False


@pytest.mark.parametrize(
    "field,value",
    [("chunk_size", 0), ("retries", -1), ("ttl", 0), ("size", -1), ("max_depth", 0)],
)
def test_out_of_range_options_are_rejected(field: str, value: float) -> None:
    with pytest.raises(ValidationError):
        ReplicationOptions(**{field: value})


def test_settings_read_replication_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """REPLICATION_* variables flow into the options model."""
    monkeypatch.setenv("REPLICATION_TTL", "5")
    monkeypatch.setenv("REPLICATION_WAIT", "true")
    monkeypatch.setenv("REPLICATION_VALIDATE", "false")
    monkeypatch.setenv("REPLICATION_GROUP", "reporting")
    options = get_settings().replication_options()
    assert options.ttl == 5.0
    assert options.wait is True
    assert options.validate_load is False
    assert options.group == "reporting"


def test_settings_invalid_replication_value_fails_on_options() -> None:
    settings = Settings(replication_chunk_size=0)
    with pytest.raises(ValidationError):
        settings.replication_options()


def test_settings_reject_unknown_exporter() -> None:
    with pytest.raises(ValidationError):
        Settings(telemetry_exporter="jaeger")


def test_settings_otlp_requires_endpoint() -> None:
    with pytest.raises(ValidationError):
        Settings(telemetry_exporter="otlp")
    settings = Settings(telemetry_exporter="otlp", telemetry_otlp_endpoint="http://localhost:4317")
    assert settings.telemetry_otlp_endpoint == "http://localhost:4317"


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()
