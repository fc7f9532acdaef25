"""Data-definition model: entities, elements, associations, replication policy.

The model is the contract between the query descriptors, the reference
resolver, and both stores. Base entities map to SQLAlchemy tables (table
name = entity name with dots replaced by underscores); derived views carry
the Select that defines them and are never stored.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

import sqlalchemy as sa

from mirrorcache.core.constants import DEFAULT_SERVICE, LOCALE_COLUMN, TEXTS_SUFFIX
from mirrorcache.domain.enums import AssociationKind, ElementType
from mirrorcache.domain.exceptions import ModelDefinitionException, UnknownEntityException
from mirrorcache.domain.query import Select

_SQL_TYPES: dict[ElementType, sa.types.TypeEngine] = {
    ElementType.STRING: sa.String(),
    ElementType.TEXT: sa.Text(),
    ElementType.INTEGER: sa.Integer(),
    ElementType.DECIMAL: sa.Numeric(asdecimal=False),
    ElementType.FLOAT: sa.Float(),
    ElementType.BOOLEAN: sa.Boolean(),
    ElementType.DATE: sa.Date(),
    ElementType.DATETIME: sa.DateTime(timezone=True),
}


@dataclass(frozen=True)
class ReplicationPolicy:
    """Per-entity replication configuration, immutable once the model is built.

    Attributes:
        enabled: Entity is replicated at all.
        group: Cache group that owns the entity (None = any group).
        auto: Load on first miss; False requires an explicit preload.
        ttl: Seconds until the replica is stale (None = cache default).
        preload: Warm eagerly after a triggering read and on TTL expiry.
        static: Reference data shared by all tenants (default tenant replica).
    """

    enabled: bool = True
    group: str | None = None
    auto: bool = True
    ttl: float | None = None
    preload: bool = False
    static: bool = False


@dataclass(frozen=True)
class Element:
    """Scalar element (column) of an entity."""

    name: str
    type: ElementType = ElementType.STRING
    key: bool = False
    localized: bool = False


@dataclass(frozen=True)
class Association:
    """Relationship from one entity to another.

    `on` pairs a source element with a target element; several pairs form a
    composite join condition. `many` marks a to-many relationship.
    """

    name: str
    target: str
    kind: AssociationKind = AssociationKind.ASSOCIATION
    on: tuple[tuple[str, str], ...] = ()
    many: bool = False


@dataclass
class Entity:
    """Base entity or derived view."""

    name: str
    elements: dict[str, Element] = field(default_factory=dict)
    associations: dict[str, Association] = field(default_factory=dict)
    query: Select | None = None
    replicate: ReplicationPolicy | None = None

    @classmethod
    def define(
        cls,
        name: str,
        elements: Iterable[Element],
        associations: Iterable[Association] = (),
        query: Select | None = None,
        replicate: ReplicationPolicy | None = None,
    ) -> Entity:
        """Build an entity from element and association sequences."""
        return cls(
            name=name,
            elements={e.name: e for e in elements},
            associations={a.name: a for a in associations},
            query=query,
            replicate=replicate,
        )

    @property
    def is_view(self) -> bool:
        return self.query is not None

    @property
    def table_name(self) -> str:
        return self.name.replace(".", "_")

    @property
    def keys(self) -> list[str]:
        """Key element names in declaration order."""
        return [e.name for e in self.elements.values() if e.key]

    @property
    def localized_elements(self) -> list[str]:
        return [e.name for e in self.elements.values() if e.localized]

    @property
    def searchable_elements(self) -> list[str]:
        return [
            e.name
            for e in self.elements.values()
            if e.type in (ElementType.STRING, ElementType.TEXT)
        ]


class DataModel:
    """Entity registry with relationship graph and SQLAlchemy table mapping."""

    def __init__(self, entities: Iterable[Entity]) -> None:
        self.entities: dict[str, Entity] = {e.name: e for e in entities}
        self._metadata: sa.MetaData | None = None
        self._validate()

    def _validate(self) -> None:
        """Check association targets, join columns and texts entities.

        Raises:
            ModelDefinitionException: On any dangling reference.
        """
        for entity in self.entities.values():
            for assoc in entity.associations.values():
                target = self.entities.get(assoc.target)
                if target is None:
                    raise ModelDefinitionException(
                        f"Association {entity.name}.{assoc.name} targets unknown entity {assoc.target}",
                        entity.name,
                    )
                for source_col, target_col in assoc.on:
                    if source_col not in entity.elements or target_col not in target.elements:
                        raise ModelDefinitionException(
                            f"Association {entity.name}.{assoc.name} joins on undefined element "
                            f"{source_col!r} -> {target_col!r}",
                            entity.name,
                        )
            if not entity.is_view and not entity.keys:
                raise ModelDefinitionException(
                    f"Entity {entity.name} has no key elements", entity.name
                )
            texts = self.entities.get(entity.name + TEXTS_SUFFIX)
            if texts is not None and LOCALE_COLUMN not in texts.elements:
                raise ModelDefinitionException(
                    f"Texts entity {texts.name} has no {LOCALE_COLUMN!r} element",
                    texts.name,
                )

    def __contains__(self, name: object) -> bool:
        return name in self.entities

    def get(self, name: str) -> Entity:
        """Return the entity definition.

        Raises:
            UnknownEntityException: If the name is not defined.
        """
        entity = self.entities.get(name)
        if entity is None:
            raise UnknownEntityException(name)
        return entity

    def texts_of(self, name: str) -> str | None:
        """Return the language-variant entity name for name, if defined."""
        texts = name + TEXTS_SUFFIX
        return texts if texts in self.entities else None

    def base_of_texts(self, name: str) -> str | None:
        """Return the base entity of a texts entity, or None."""
        if name.endswith(TEXTS_SUFFIX):
            base = name[: -len(TEXTS_SUFFIX)]
            if base in self.entities:
                return base
        return None

    def policy(self, name: str) -> ReplicationPolicy | None:
        """Replication policy of an entity; texts entities inherit their base's."""
        entity = self.entities.get(name)
        if entity is None:
            return None
        if entity.replicate is not None:
            return entity.replicate
        base = self.base_of_texts(name)
        return self.entities[base].replicate if base else None

    def replicated(self, service: str = DEFAULT_SERVICE, group: str | None = None) -> list[str]:
        """Names of the entities a cache for service and group replicates.

        Views are never replicated themselves. Texts entities of replicated
        entities are included.
        """
        refs: list[str] = []
        for name, entity in self.entities.items():
            if entity.is_view or entity.replicate is None or not entity.replicate.enabled:
                continue
            if service != DEFAULT_SERVICE and not name.startswith(f"{service}."):
                continue
            if group and entity.replicate.group and entity.replicate.group != group:
                continue
            refs.append(name)
        for name in list(refs):
            texts = self.texts_of(name)
            if texts and texts not in refs:
                refs.append(texts)
        return sorted(refs)

    @property
    def metadata(self) -> sa.MetaData:
        """SQLAlchemy metadata with one Table per base entity (built lazily)."""
        if self._metadata is None:
            metadata = sa.MetaData()
            for entity in self.entities.values():
                if entity.is_view:
                    continue
                sa.Table(
                    entity.table_name,
                    metadata,
                    *(
                        sa.Column(e.name, _SQL_TYPES[e.type], primary_key=e.key)
                        for e in entity.elements.values()
                    ),
                )
            self._metadata = metadata
        return self._metadata

    def table(self, name: str) -> sa.Table:
        """Return the Table of a base entity.

        Raises:
            UnknownEntityException: If name is unknown or a view.
        """
        entity = self.get(name)
        if entity.is_view:
            raise UnknownEntityException(name)
        return self.metadata.tables[entity.table_name]

    def subset_metadata(self, names: Iterable[str]) -> list[sa.Table]:
        """Tables for the given base entity names (schema subset for on-demand creation)."""
        return [self.table(name) for name in names]
