"""Shared telemetry: logging setup, OpenTelemetry config and tracing helpers."""

from mirrorcache.shared.telemetry.telemetry import (
    TelemetryConfig,
    get_telemetry,
    set_telemetry,
)
from mirrorcache.shared.telemetry.tracing import (
    TracedOperation,
    add_span_attributes,
    add_span_event,
    set_span_error,
    traced,
)

__all__ = [
    "setup_logging",
    "TelemetryConfig",
    "get_telemetry",
    "set_telemetry",
    "traced",
    "add_span_attributes",
    "add_span_event",
    "set_span_error",
    "TracedOperation",
]
