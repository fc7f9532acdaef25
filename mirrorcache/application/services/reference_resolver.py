"""Query reference resolution: which base entities does a read depend on.

Pure and synchronous (no I/O). Walks the source chain, every expression
clause, sub-selects and expansions of a Select, collecting each entity
reached through an association hop. Results are deduplicated and sorted
so logging and tests are deterministic.

Shapes that cannot be classified raise ResolutionAmbiguityException; the
coordinator treats that as "no relevant refs" and reads from the primary.
Recursion is capped by max_depth and view-definition cycles are detected,
both failing closed the same way.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from mirrorcache.domain.exceptions import ResolutionAmbiguityException
from mirrorcache.domain.model import DataModel, Entity
from mirrorcache.domain.query import (
    Column,
    ColumnLike,
    Expand,
    Expr,
    Func,
    Join,
    Query,
    RawQuery,
    Ref,
    Scan,
    Select,
    SetOp,
    Source,
    SubQuery,
    SubSelect,
    Val,
    Xpr,
)


def unique(refs: Iterable[str]) -> list[str]:
    """Deduplicate and sort entity names."""
    return sorted(set(refs))


@dataclass
class _Scope:
    """Name resolution scope of one select level.

    target is the entity unqualified refs start from (None for joins and set
    operations); aliases maps source aliases to their entity; parent is the
    enclosing query level for correlated sub-selects.
    """

    target: Entity | None = None
    aliases: dict[str, Entity | None] = field(default_factory=dict)
    parent: _Scope | None = None

    def _exposes(self, entity: Entity | None, name: str) -> bool:
        return entity is not None and (name in entity.elements or name in entity.associations)

    def locate(self, path: tuple[str, ...]) -> tuple[Entity | None, tuple[str, ...]]:
        """Return the entity a path starts from and the remaining steps."""
        head = path[0]
        if self._exposes(self.target, head):
            return self.target, path
        if len(path) > 1:
            scope: _Scope | None = self
            while scope is not None:
                if head in scope.aliases:
                    return scope.aliases[head], path[1:]
                scope = scope.parent
        if self.target is not None or not self.aliases:
            return self.target, path
        candidates = {
            id(entity): entity
            for entity in self.aliases.values()
            if self._exposes(entity, head)
        }
        if len(candidates) == 1:
            return next(iter(candidates.values())), path
        if not candidates and len(path) == 1:
            return None, path
        raise ResolutionAmbiguityException(
            f"unqualified reference {head!r} matches {len(candidates)} join sources", path
        )


class ReferenceResolver:
    """Maps query descriptors to the base entity names they depend on."""

    def __init__(self, model: DataModel, max_depth: int = 32) -> None:
        """Initialize the resolver.

        Args:
            model: Data-definition model with the relationship graph.
            max_depth: Maximum nesting of sub-queries, expansions and views.
        """
        self.model = model
        self.max_depth = max_depth

    def resolve(self, query: Query, *, base_only: bool = False) -> list[str]:
        """Resolve the sorted entity names a query depends on.

        Args:
            query: Structured Select or RawQuery (always empty: no opinion).
            base_only: Expand derived views into their base entities and add
                texts entities for localized queries (deploy mode).

        Raises:
            ResolutionAmbiguityException: If the query shape cannot be classified.
        """
        if isinstance(query, RawQuery):
            return []
        refs = self.query_refs(query)
        if base_only:
            refs = self.base_refs(refs)
            refs = self.localized_refs(query, refs)
        return refs

    def query_refs(self, query: Select) -> list[str]:
        """Entity names referenced by a Select, views not expanded."""
        return unique(self._select_refs(query, 0, None))

    def base_refs(self, refs: Iterable[str]) -> list[str]:
        """Replace every derived view by the base entities its query depends on."""
        result: list[str] = []

        def expand(name: str, chain: tuple[str, ...]) -> None:
            entity = self.model.entities.get(name)
            if entity is None or entity.query is None:
                result.append(name)
                return
            if name in chain:
                raise ResolutionAmbiguityException(
                    "cyclic view definition", chain + (name,)
                )
            if len(chain) >= self.max_depth:
                raise ResolutionAmbiguityException("view nesting too deep", chain)
            for ref in self.query_refs(entity.query):
                expand(ref, chain + (name,))

        for ref in refs:
            expand(ref, ())
        return unique(result)

    def localized_refs(self, query: Select, refs: Iterable[str]) -> list[str]:
        """Add the texts entity of each ref when the query reads localized data."""
        refs = list(refs)
        if not query.localized:
            return unique(refs)
        texts = [t for t in (self.model.texts_of(ref) for ref in refs) if t]
        return unique(refs + texts)

    def target(self, query: Select) -> Entity | None:
        """Entity a Select reads from (None for joins, set operations, unknown names)."""
        source = query.source
        if isinstance(source, Scan):
            entity = self.model.entities.get(source.entity)
            for step in source.path:
                assoc = entity.associations.get(step) if entity else None
                if assoc is None:
                    return None
                entity = self.model.entities.get(assoc.target)
            return entity
        if isinstance(source, SubQuery):
            return self.target(source.query)
        return None

    def target_name(self, query: Query) -> str | None:
        """Name of the query target for statistics, falling back to the first scanned entity."""
        if isinstance(query, RawQuery):
            return None
        entity = self.target(query)
        if entity is not None:
            return entity.name
        source = query.source
        return source.entity if isinstance(source, Scan) else None

    def _check_depth(self, depth: int) -> None:
        if depth > self.max_depth:
            raise ResolutionAmbiguityException(
                f"nesting exceeds maximum depth {self.max_depth}"
            )

    def _select_refs(self, query: Select, depth: int, parent: _Scope | None) -> list[str]:
        self._check_depth(depth)
        refs, scope = self._source_refs(query.source, depth, parent)
        for order in query.order_by:
            refs += self._expr_refs(order.expr, scope, depth)
        for column in query.columns:
            refs += self._column_refs(column, scope, depth)
        for expr in (query.where, query.having, *query.group_by):
            if expr is not None:
                refs += self._expr_refs(expr, scope, depth)
        return refs

    def _source_refs(
        self, source: Source, depth: int, parent: _Scope | None
    ) -> tuple[list[str], _Scope]:
        if isinstance(source, Scan):
            refs = [source.entity]
            entity = self.model.entities.get(source.entity)
            if source.where is not None:
                refs += self._expr_refs(
                    source.where, _Scope(target=entity, parent=parent), depth
                )
            for step in source.path:
                assoc = entity.associations.get(step) if entity else None
                if assoc is None:
                    raise ResolutionAmbiguityException(
                        f"navigation step {step!r} is not an association",
                        (source.entity,) + source.path,
                    )
                refs.append(assoc.target)
                entity = self.model.entities.get(assoc.target)
            alias = source.alias or source.entity.rsplit(".", 1)[-1]
            return refs, _Scope(target=entity, aliases={alias: entity}, parent=parent)
        if isinstance(source, SubQuery):
            refs = self._select_refs(source.query, depth + 1, parent)
            entity = self.target(source.query)
            aliases = {source.alias: entity} if source.alias else {}
            return refs, _Scope(target=entity, aliases=aliases, parent=parent)
        if isinstance(source, Join):
            refs = []
            aliases: dict[str, Entity | None] = {}
            for arg in source.args:
                arg_refs, arg_scope = self._source_refs(arg, depth + 1, parent)
                refs += arg_refs
                aliases.update(arg_scope.aliases)
            scope = _Scope(aliases=aliases, parent=parent)
            if source.on is not None:
                refs += self._expr_refs(source.on, scope, depth)
            return refs, scope
        if isinstance(source, SetOp):
            refs = []
            for arg in source.args:
                refs += self._select_refs(arg, depth + 1, parent)
            aliases = {source.alias: None} if source.alias else {}
            return refs, _Scope(aliases=aliases, parent=parent)
        raise ResolutionAmbiguityException(f"unsupported source {type(source).__name__}")

    def _column_refs(self, column: ColumnLike, scope: _Scope, depth: int) -> list[str]:
        if isinstance(column, Column):
            return self._expr_refs(column.expr, scope, depth)
        if isinstance(column, Expand):
            return self._expand_refs(column, scope, depth + 1)
        raise ResolutionAmbiguityException(f"unsupported column {type(column).__name__}")

    def _expand_refs(self, expand: Expand, scope: _Scope, depth: int) -> list[str]:
        self._check_depth(depth)
        entity, steps = scope.locate(expand.path)
        refs: list[str] = []
        for step in steps:
            assoc = entity.associations.get(step) if entity else None
            if assoc is None:
                raise ResolutionAmbiguityException(
                    f"expansion step {step!r} is not an association", expand.path
                )
            refs.append(assoc.target)
            entity = self.model.entities.get(assoc.target)
        inner = _Scope(target=entity, parent=scope)
        for column in expand.columns:
            refs += self._column_refs(column, inner, depth)
        if expand.where is not None:
            refs += self._expr_refs(expand.where, inner, depth)
        for order in expand.order_by:
            refs += self._expr_refs(order.expr, inner, depth)
        return refs

    def _expr_refs(self, expr: Expr, scope: _Scope, depth: int) -> list[str]:
        if isinstance(expr, Ref):
            return self._path_refs(expr.path, scope)
        if isinstance(expr, Val):
            return []
        if isinstance(expr, (Func, Xpr)):
            refs: list[str] = []
            for arg in expr.args:
                refs += self._expr_refs(arg, scope, depth)
            return refs
        if isinstance(expr, SubSelect):
            return self._select_refs(expr.query, depth + 1, scope)
        raise ResolutionAmbiguityException(f"unsupported expression {type(expr).__name__}")

    def _path_refs(self, path: tuple[str, ...], scope: _Scope) -> list[str]:
        """Targets of every association hop of a reference path.

        An unknown last step is a plain column (alias, computed or view
        column) and contributes nothing; anything else that cannot be
        navigated is ambiguous.
        """
        entity, steps = scope.locate(path)
        refs: list[str] = []
        last = len(steps) - 1
        for index, step in enumerate(steps):
            assoc = entity.associations.get(step) if entity else None
            if assoc is not None:
                refs.append(assoc.target)
                entity = self.model.entities.get(assoc.target)
                continue
            if index == last:
                break
            raise ResolutionAmbiguityException(
                f"cannot navigate through {step!r}", path
            )
        return refs
