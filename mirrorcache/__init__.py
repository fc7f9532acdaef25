"""mirrorcache: transparent read-through replication cache for a primary SQL store."""

__version__ = "1.0.0"
