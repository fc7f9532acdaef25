"""Core: config, constants, request context, and application bootstrap.

Single place for settings and shared constants.
"""

from mirrorcache.core.config import ReplicationOptions, Settings, get_settings

__all__ = ["ReplicationOptions", "Settings", "get_settings"]
