"""Domain enumerations for the replication cache.

Enums represent fixed sets of domain values (entry lifecycle, association
kinds, element types, tenant scope).
"""

from enum import Enum


class _ValuesMixin:
    """Mixin that adds a values() classmethod to str Enums."""

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid values as strings."""
        return [member.value for member in cls]


class EntryStatus(_ValuesMixin, str, Enum):
    """Cache entry lifecycle status.

    NEW -> INITIALIZED -> OPEN -> READY; READY -> OPEN on TTL expiry or
    clear; any step may end in FAILED (retryable) or INVALID (retry budget
    exceeded). NOT_READY is only reported by the coordinator as the
    aggregate of a set of entries that are not all READY.
    """

    NEW = "NEW"
    INITIALIZED = "INITIALIZED"
    NOT_READY = "NOT_READY"
    READY = "READY"
    OPEN = "OPEN"
    FAILED = "FAILED"
    INVALID = "INVALID"

    @property
    def settled(self) -> bool:
        """True for the states a read decision can safely act on."""
        return self in (EntryStatus.READY, EntryStatus.INVALID)


class AssociationKind(_ValuesMixin, str, Enum):
    """Relationship kind between two entities."""

    ASSOCIATION = "association"
    COMPOSITION = "composition"


class ElementType(_ValuesMixin, str, Enum):
    """Scalar element types supported by the replica schema."""

    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    DECIMAL = "decimal"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"


class TenantScope(Enum):
    """Tenant selector of maintenance operations beyond a single tenant id.

    Not a str enum: no tenant id may compare equal to it.
    """

    ALL = "all"


ALL_TENANTS = TenantScope.ALL
