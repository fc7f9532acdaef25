"""Shared utilities: datetime helpers."""

from mirrorcache.shared.utils.datetime import utc_now

__all__ = ["utc_now"]
