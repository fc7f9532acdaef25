"""Application services: pure logic shared by the cache and its collaborators."""

from mirrorcache.application.services.reference_resolver import ReferenceResolver, unique

__all__ = ["ReferenceResolver", "unique"]
