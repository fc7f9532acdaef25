"""Query descriptor compilation to SQLAlchemy Core and execution.

Used by both the primary data service and the replica store so that a read
produces the same rows on either side. Every relation is aliased so the
same entity can appear more than once in a statement.

- Scan navigation paths become EXISTS semi-joins back to the scanned entity.
- Association hops inside expressions become LEFT OUTER JOINs (to-many hops
  multiply rows, as SQL does).
- Derived views are inlined as subqueries of their defining Select.
- Localized reads left-join the texts entity on the request locale and
  coalesce localized elements.
- Expansions run as one batched follow-up query per level.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection

from mirrorcache.core.constants import LOCALE_COLUMN
from mirrorcache.domain.exceptions import QueryCompilationException
from mirrorcache.domain.model import Association, DataModel, Entity
from mirrorcache.domain.query import (
    Column,
    Expand,
    Expr,
    Func,
    Join,
    OrderBy,
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

_HIDDEN_PREFIX = "__x"

_COMPARISONS = {
    "=": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<>": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "+": lambda a, b: a + b,
    "-": lambda a, b: a - b,
    "*": lambda a, b: a * b,
    "/": lambda a, b: a / b,
    "like": lambda a, b: a.like(b),
}

_SET_OPS = {
    ("union", False): sa.union,
    ("union", True): sa.union_all,
    ("intersect", False): sa.intersect,
    ("intersect", True): sa.intersect_all,
    ("except", False): sa.except_,
    ("except", True): sa.except_all,
}


@dataclass
class _Relation:
    """One aliased relation in scope: a table, view subquery or derived table."""

    entity: Entity | None
    selectable: sa.FromClause
    texts: sa.FromClause | None = None

    def exposes(self, name: str) -> bool:
        return name in self.selectable.c or (
            self.entity is not None and name in self.entity.associations
        )


@dataclass
class _Scope:
    target: _Relation | None
    from_clause: sa.FromClause
    aliases: dict[str, _Relation] = field(default_factory=dict)
    filters: list[sa.ColumnElement[Any]] = field(default_factory=list)
    parent: _Scope | None = None
    path_joins: dict[tuple[int, str], _Relation] = field(default_factory=dict)

    def locate(self, path: tuple[str, ...]) -> tuple[_Scope, _Relation, tuple[str, ...]]:
        """Return the owning scope, the relation a path starts from, and the remaining steps."""
        head = path[0]
        if self.target is not None and self.target.exposes(head):
            return self, self.target, path
        if len(path) > 1:
            scope: _Scope | None = self
            while scope is not None:
                if head in scope.aliases:
                    return scope, scope.aliases[head], path[1:]
                scope = scope.parent
        candidates = {id(r): r for r in self.aliases.values() if r.exposes(head)}
        if len(candidates) == 1:
            return self, next(iter(candidates.values())), path
        if not candidates and self.parent is not None:
            return self.parent.locate(path)
        raise QueryCompilationException(f"cannot resolve reference {'.'.join(path)!r}")


@dataclass
class _ExpandPlan:
    key: str
    expand: Expand
    association: Association
    hidden: list[str]


@dataclass
class CompiledQuery:
    """SQLAlchemy statement plus the expansion plans applied after fetching."""

    statement: sa.Select[Any]
    expands: list[_ExpandPlan] = field(default_factory=list)
    localized: bool = False


class QueryCompiler:
    """Compiles and executes query descriptors against a DataModel's tables."""

    def __init__(self, model: DataModel) -> None:
        self.model = model

    async def execute(
        self, conn: AsyncConnection, query: Query, locale: str | None = None
    ) -> Any:
        """Run a query on an open connection.

        Returns:
            list of dict rows; a dict or None for Select(one=True); the row
            count for a RawQuery that returns no rows.
        """
        if isinstance(query, RawQuery):
            result = await conn.execute(sa.text(query.sql), query.params)
            if not result.returns_rows:
                return result.rowcount
            return [dict(row) for row in result.mappings().all()]
        compiled = self.compile(query, locale)
        rows = await self._fetch(conn, compiled, locale)
        if query.one:
            return rows[0] if rows else None
        return rows

    def compile(self, query: Select, locale: str | None = None) -> CompiledQuery:
        """Translate a Select into a SQLAlchemy statement.

        Raises:
            QueryCompilationException: If the descriptor has no SQL rendition.
        """
        compiled = CompiledQuery(statement=sa.select(), localized=query.localized)
        compiled.statement, _ = self._statement(query, None, locale, compiled.expands)
        return compiled

    def _statement(
        self,
        query: Select,
        parent: _Scope | None,
        locale: str | None,
        expands: list[_ExpandPlan] | None = None,
    ) -> tuple[sa.Select[Any], _Scope]:
        locale = locale if query.localized else None
        scope = self._source(query.source, parent, locale)
        columns = self._columns(query, scope, expands)
        where = list(scope.filters)
        if query.where is not None:
            where.append(self._expr(query.where, scope))
        if query.search:
            where.append(self._search(query.search, scope))
        group_by = [self._expr(e, scope) for e in query.group_by]
        having = self._expr(query.having, scope) if query.having is not None else None
        labels = {c.name: c for c in columns if isinstance(c, sa.Label)}
        order_by = [self._order(o, scope, labels) for o in query.order_by]

        stmt = sa.select(*columns).select_from(scope.from_clause)
        if where:
            stmt = stmt.where(*where)
        if group_by:
            stmt = stmt.group_by(*group_by)
        if having is not None:
            stmt = stmt.having(having)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if query.distinct:
            stmt = stmt.distinct()
        limit = 1 if query.one and query.limit is None else query.limit
        if limit is not None:
            stmt = stmt.limit(limit)
        if query.offset:
            stmt = stmt.offset(query.offset)
        return stmt, scope

    def _relation(self, name: str, alias: str | None, locale: str | None) -> _Relation:
        entity = self.model.get(name)
        if entity.query is not None:
            stmt, _ = self._statement(entity.query, None, locale)
            return _Relation(entity, stmt.subquery(alias))
        return _Relation(entity, self.model.table(name).alias(alias))

    def _source(self, source: Source, parent: _Scope | None, locale: str | None) -> _Scope:
        if isinstance(source, Scan):
            return self._scan(source, parent, locale)
        if isinstance(source, SubQuery):
            stmt, inner = self._statement(source.query, None, locale)
            entity = inner.target.entity if inner.target else None
            relation = _Relation(entity, stmt.subquery(source.alias))
            aliases = {source.alias: relation} if source.alias else {}
            return _Scope(relation, relation.selectable, aliases, parent=parent)
        if isinstance(source, Join):
            return self._join(source, parent, locale)
        if isinstance(source, SetOp):
            combine = _SET_OPS.get((source.op, source.all))
            if combine is None:
                raise QueryCompilationException(f"unsupported set operation {source.op!r}")
            statements = [self._statement(arg, None, locale)[0] for arg in source.args]
            relation = _Relation(None, combine(*statements).subquery(source.alias))
            aliases = {source.alias: relation} if source.alias else {}
            return _Scope(relation, relation.selectable, aliases, parent=parent)
        raise QueryCompilationException(f"unsupported source {type(source).__name__}")

    def _scan(self, scan: Scan, parent: _Scope | None, locale: str | None) -> _Scope:
        alias = scan.alias or scan.entity.rsplit(".", 1)[-1]
        first = self._relation(scan.entity, None if scan.path else scan.alias, locale)
        scope = _Scope(first, first.selectable, {alias: first}, parent=parent)
        criterion = self._expr(scan.where, scope) if scan.where is not None else None
        if not scan.path:
            if criterion is not None:
                scope.filters.append(criterion)
            if locale and first.entity is not None:
                self._localize(scope, first, locale)
            return scope

        # Navigation: the target is restricted by nested EXISTS back to the scanned entity
        from_clause = scope.from_clause
        current = first
        for index, step in enumerate(scan.path):
            assoc = current.entity.associations.get(step) if current.entity else None
            if assoc is None:
                raise QueryCompilationException(f"{step!r} is not an association of {scan.entity}")
            is_last = index == len(scan.path) - 1
            following = self._relation(assoc.target, scan.alias if is_last else None, locale)
            conditions = [current.selectable.c[s] == following.selectable.c[t] for s, t in assoc.on]
            if criterion is not None:
                conditions.append(criterion)
            criterion = (
                sa.select(sa.literal(1)).select_from(from_clause).where(*conditions).exists()
            )
            from_clause = following.selectable
            current = following

        scope = _Scope(current, current.selectable, {alias: current}, parent=parent)
        scope.filters.append(criterion)
        if locale and current.entity is not None:
            self._localize(scope, current, locale)
        return scope

    def _localize(self, scope: _Scope, relation: _Relation, locale: str) -> None:
        texts_name = self.model.texts_of(relation.entity.name)
        if texts_name is None or not relation.entity.localized_elements:
            return
        texts = self.model.table(texts_name).alias()
        condition = sa.and_(
            *(texts.c[k] == relation.selectable.c[k] for k in relation.entity.keys),
            texts.c[LOCALE_COLUMN] == locale,
        )
        scope.from_clause = sa.outerjoin(scope.from_clause, texts, condition)
        relation.texts = texts

    def _join(self, join: Join, parent: _Scope | None, locale: str | None) -> _Scope:
        if len(join.args) < 2:
            raise QueryCompilationException("join needs at least two sources")
        if join.kind not in ("inner", "left", "full", "cross"):
            raise QueryCompilationException(f"unsupported join kind {join.kind!r}")
        scopes = [self._source(arg, parent, locale) for arg in join.args]
        merged = _Scope(None, scopes[0].from_clause, parent=parent)
        for scope in scopes:
            merged.aliases.update(scope.aliases)
            merged.filters.extend(scope.filters)
        on = self._expr(join.on, merged) if join.on is not None else sa.true()
        if merged.path_joins:
            raise QueryCompilationException("join conditions cannot navigate associations")
        from_clause = scopes[0].from_clause
        for index, scope in enumerate(scopes[1:], start=1):
            onclause = on if index == len(scopes) - 1 else sa.true()
            from_clause = sa.join(
                from_clause,
                scope.from_clause,
                onclause,
                isouter=join.kind == "left",
                full=join.kind == "full",
            )
        merged.from_clause = from_clause
        return merged

    def _columns(
        self, query: Select, scope: _Scope, expands: list[_ExpandPlan] | None
    ) -> list[sa.ColumnElement[Any]]:
        columns: list[sa.ColumnElement[Any]] = []
        plain = [c for c in query.columns if isinstance(c, Column)]
        if not plain:
            columns += self._star(scope)
        for index, column in enumerate(query.columns):
            if isinstance(column, Column):
                name = column.alias or self._name(column.expr, index, scope)
                columns.append(self._expr(column.expr, scope).label(name))
            elif isinstance(column, Expand):
                if expands is None:
                    raise QueryCompilationException("expansions are only supported at the top level")
                plan, hidden = self._plan_expand(column, scope, len(expands))
                expands.append(plan)
                columns += hidden
        return columns

    def _star(self, scope: _Scope) -> list[sa.ColumnElement[Any]]:
        relations = [scope.target] if scope.target is not None else list(
            {id(r): r for r in scope.aliases.values()}.values()
        )
        columns: list[sa.ColumnElement[Any]] = []
        for relation in relations:
            for column in relation.selectable.c:
                columns.append(self._element(relation, column.key).label(column.key))
        if not columns:
            raise QueryCompilationException("select without columns")
        return columns

    def _plan_expand(
        self, expand: Expand, scope: _Scope, index: int
    ) -> tuple[_ExpandPlan, list[sa.ColumnElement[Any]]]:
        _, relation, steps = scope.locate(expand.path)
        if len(steps) != 1:
            raise QueryCompilationException("expansion paths must be a single association")
        assoc = relation.entity.associations.get(steps[0]) if relation.entity else None
        if assoc is None:
            raise QueryCompilationException(f"{steps[0]!r} is not an association")
        labels = [f"{_HIDDEN_PREFIX}{index}_{source}" for source, _ in assoc.on]
        hidden = [
            relation.selectable.c[source].label(label)
            for (source, _), label in zip(assoc.on, labels)
        ]
        plan = _ExpandPlan(expand.alias or steps[0], expand, assoc, labels)
        return plan, hidden

    def _name(self, expr: Expr, index: int, scope: _Scope) -> str:
        if isinstance(expr, Ref):
            _, _, steps = scope.locate(expr.path)
            return "_".join(steps)
        if isinstance(expr, Func):
            return expr.name
        return f"column_{index}"

    def _order(
        self, order: OrderBy, scope: _Scope, labels: dict[str, sa.Label[Any]]
    ) -> sa.ColumnElement[Any]:
        expr = order.expr
        if isinstance(expr, Ref) and len(expr.path) == 1 and expr.path[0] in labels:
            # Rendered as a reference to the output column
            compiled: sa.ColumnElement[Any] = labels[expr.path[0]]
        else:
            compiled = self._expr(expr, scope)
        return compiled.desc() if order.descending else compiled.asc()

    def _search(self, term: str, scope: _Scope) -> sa.ColumnElement[Any]:
        relation = scope.target
        if relation is None or relation.entity is None:
            raise QueryCompilationException("search needs a single entity target")
        names = [n for n in relation.entity.searchable_elements if n in relation.selectable.c]
        if not names:
            raise QueryCompilationException(f"{relation.entity.name} has no searchable elements")
        pattern = f"%{term}%"
        return sa.or_(*(self._element(relation, name).ilike(pattern) for name in names))

    def _expr(self, expr: Expr, scope: _Scope) -> sa.ColumnElement[Any]:
        if isinstance(expr, Ref):
            return self._ref(expr.path, scope)
        if isinstance(expr, Val):
            return sa.literal(expr.value)
        if isinstance(expr, Func):
            return getattr(sa.func, expr.name)(*(self._expr(a, scope) for a in expr.args))
        if isinstance(expr, SubSelect):
            stmt, _ = self._statement(expr.query, scope, None)
            return stmt.scalar_subquery()
        if isinstance(expr, Xpr):
            return self._xpr(expr, scope)
        raise QueryCompilationException(f"unsupported expression {type(expr).__name__}")

    def _xpr(self, expr: Xpr, scope: _Scope) -> sa.ColumnElement[Any]:
        op = expr.op.lower()
        if op == "and":
            return sa.and_(*(self._expr(a, scope) for a in expr.args))
        if op == "or":
            return sa.or_(*(self._expr(a, scope) for a in expr.args))
        if op == "not":
            return sa.not_(self._expr(expr.args[0], scope))
        if op == "exists":
            subselect = expr.args[0]
            if not isinstance(subselect, SubSelect):
                raise QueryCompilationException("exists needs a sub-select")
            stmt, _ = self._statement(subselect.query, scope, None)
            return stmt.exists()
        if op in ("is null", "is not null"):
            operand = self._expr(expr.args[0], scope)
            return operand.is_(None) if op == "is null" else operand.is_not(None)
        if op in ("in", "not in"):
            left, right = expr.args
            compiled = self._expr(left, scope)
            if isinstance(right, SubSelect):
                stmt, _ = self._statement(right.query, scope, None)
                condition = compiled.in_(stmt)
            elif isinstance(right, Val):
                condition = compiled.in_(list(right.value))
            else:
                raise QueryCompilationException("'in' needs a sub-select or a value list")
            return condition if op == "in" else sa.not_(condition)
        binary = _COMPARISONS.get(op)
        if binary is None or len(expr.args) != 2:
            raise QueryCompilationException(f"unsupported operator {expr.op!r}")
        return binary(self._expr(expr.args[0], scope), self._expr(expr.args[1], scope))

    def _ref(self, path: tuple[str, ...], scope: _Scope) -> sa.ColumnElement[Any]:
        owner, relation, steps = scope.locate(path)
        for step in steps[:-1]:
            assoc = relation.entity.associations.get(step) if relation.entity else None
            if assoc is None:
                raise QueryCompilationException(f"cannot navigate through {step!r}")
            relation = self._path_join(owner, relation, assoc)
        last = steps[-1]
        if last not in relation.selectable.c:
            raise QueryCompilationException(f"unknown column {'.'.join(path)!r}")
        return self._element(relation, last)

    def _path_join(self, scope: _Scope, relation: _Relation, assoc: Association) -> _Relation:
        key = (id(relation), assoc.name)
        joined = scope.path_joins.get(key)
        if joined is None:
            joined = self._relation(assoc.target, None, None)
            condition = sa.and_(
                *(relation.selectable.c[s] == joined.selectable.c[t] for s, t in assoc.on)
            )
            scope.from_clause = sa.outerjoin(scope.from_clause, joined.selectable, condition)
            scope.path_joins[key] = joined
        return joined

    def _element(self, relation: _Relation, name: str) -> sa.ColumnElement[Any]:
        column = relation.selectable.c[name]
        if (
            relation.texts is not None
            and relation.entity is not None
            and name in relation.entity.localized_elements
        ):
            return sa.func.coalesce(relation.texts.c[name], column)
        return column

    async def _fetch(
        self, conn: AsyncConnection, compiled: CompiledQuery, locale: str | None
    ) -> list[dict[str, Any]]:
        result = await conn.execute(compiled.statement)
        rows = [dict(row) for row in result.mappings().all()]
        for plan in compiled.expands:
            await self._expand(conn, plan, rows, locale if compiled.localized else None)
        if compiled.expands:
            for row in rows:
                for key in [k for k in row if k.startswith(_HIDDEN_PREFIX)]:
                    del row[key]
        return rows

    async def _expand(
        self,
        conn: AsyncConnection,
        plan: _ExpandPlan,
        rows: list[dict[str, Any]],
        locale: str | None,
    ) -> None:
        """Attach expanded rows: a list for to-many, a dict or None for to-one."""
        assoc = plan.association
        parent_keys = {
            tuple(row[label] for label in plan.hidden)
            for row in rows
        }
        parent_keys = {k for k in parent_keys if None not in k}
        children: dict[tuple[Any, ...], list[dict[str, Any]]] = defaultdict(list)
        if parent_keys:
            target = self.model.get(assoc.target)
            key_labels = [f"__key_{t}" for _, t in assoc.on]
            columns = plan.expand.columns
            if not any(isinstance(c, Column) for c in columns):
                columns = tuple(Column(Ref((name,))) for name in target.elements) + columns
            columns += tuple(Column(Ref((t,)), label) for (_, t), label in zip(assoc.on, key_labels))
            where = self._key_filter([t for _, t in assoc.on], parent_keys)
            if plan.expand.where is not None:
                where = Xpr("and", (where, plan.expand.where))
            order_by = plan.expand.order_by or tuple(OrderBy(Ref((k,))) for k in target.keys)
            sub = Select(
                Scan(assoc.target),
                columns=columns,
                where=where,
                order_by=order_by,
                localized=locale is not None,
            )
            compiled = CompiledQuery(statement=sa.select(), localized=locale is not None)
            compiled.statement, _ = self._statement(sub, None, locale, compiled.expands)
            for child in await self._fetch(conn, compiled, locale):
                key = tuple(child.pop(label) for label in key_labels)
                children[key].append(child)
        for row in rows:
            matches = children.get(tuple(row[label] for label in plan.hidden), [])
            row[plan.key] = matches if assoc.many else (matches[0] if matches else None)

    @staticmethod
    def _key_filter(columns: list[str], keys: set[tuple[Any, ...]]) -> Expr:
        if len(columns) == 1:
            return Xpr("in", (Ref((columns[0],)), Val(sorted(k[0] for k in keys))))
        return Xpr(
            "or",
            tuple(
                Xpr("and", tuple(Xpr("=", (Ref((c,)), Val(v))) for c, v in zip(columns, key)))
                for key in keys
            ),
        )


def count_query(entity: str) -> Select:
    """Row-count Select for an entity (bypasses the cache)."""
    return Select(
        Scan(entity),
        columns=(Column(Func("count"), "count"),),
        one=True,
        use_cache=False,
    )


def chunk_query(entity: Entity, limit: int, offset: int) -> Select:
    """Key-ordered page of an entity's rows (bypasses the cache)."""
    return Select(
        Scan(entity.name),
        order_by=tuple(OrderBy(Ref((key,))) for key in entity.keys),
        limit=limit,
        offset=offset,
        use_cache=False,
    )
