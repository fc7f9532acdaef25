"""Domain layer: data model, query descriptors, enums, and exceptions.

No dependencies on infrastructure or presentation. Used by application
and infrastructure layers.
"""

from mirrorcache.domain.enums import (
    ALL_TENANTS,
    AssociationKind,
    ElementType,
    EntryStatus,
    TenantScope,
)
from mirrorcache.domain.exceptions import (
    MirrorCacheException,
    ModelDefinitionException,
    QueryCompilationException,
    ResolutionAmbiguityException,
    UnknownEntityException,
)
from mirrorcache.domain.model import (
    Association,
    DataModel,
    Element,
    Entity,
    ReplicationPolicy,
)

__all__ = [
    "ALL_TENANTS",
    "Association",
    "AssociationKind",
    "DataModel",
    "Element",
    "ElementType",
    "Entity",
    "EntryStatus",
    "MirrorCacheException",
    "ModelDefinitionException",
    "QueryCompilationException",
    "ReplicationPolicy",
    "ResolutionAmbiguityException",
    "TenantScope",
    "UnknownEntityException",
]
