"""Shared utilities: telemetry and cross-cutting helpers.

Used by application, infrastructure and api. No cache logic.
"""

from mirrorcache.shared.utils import utc_now

__all__ = ["utc_now"]
