"""Structured read-query descriptors.

A closed tagged union: a Select reads from a Source (Scan | SubQuery | Join
| SetOp); expressions are Ref | Val | Func | Xpr | SubSelect; columns are
Column | Expand. RawQuery is an unstructured pass-through statement that the
cache never claims.

Paths are tuples of names; Ref.of("author.name") splits a dotted path.
Entity names themselves may contain dots and are never split.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class Ref:
    """Reference to an element, optionally through association hops."""

    path: tuple[str, ...]

    @classmethod
    def of(cls, dotted: str) -> Ref:
        """Build a Ref from a dotted path such as 'author.name'."""
        return cls(tuple(dotted.split(".")))


@dataclass(frozen=True)
class Val:
    """Literal value (bound as a parameter)."""

    value: Any


@dataclass(frozen=True)
class Func:
    """Function call, e.g. Func('count') or Func('lower', (Ref.of('title'),))."""

    name: str
    args: tuple[Expr, ...] = ()


@dataclass(frozen=True)
class Xpr:
    """Operator expression.

    Binary: = != < <= > >= like + - * /; n-ary: and, or; unary: not,
    exists, is null, is not null; 'in' / 'not in' take a SubSelect or
    a Val holding a sequence as second operand.
    """

    op: str
    args: tuple[Expr, ...]


@dataclass(frozen=True)
class SubSelect:
    """Nested query used as an expression (scalar, IN or EXISTS operand)."""

    query: Select


Expr = Union[Ref, Val, Func, Xpr, SubSelect]


@dataclass(frozen=True)
class Column:
    """Projected expression with an optional alias."""

    expr: Expr
    alias: str | None = None

    @classmethod
    def of(cls, dotted: str, alias: str | None = None) -> Column:
        return cls(Ref.of(dotted), alias)


@dataclass(frozen=True)
class OrderBy:
    expr: Expr
    descending: bool = False


@dataclass(frozen=True)
class Expand:
    """Eager expansion of an association into nested result rows."""

    path: tuple[str, ...]
    columns: tuple[ColumnLike, ...] = ()
    alias: str | None = None
    where: Expr | None = None
    order_by: tuple[OrderBy, ...] = ()

    @classmethod
    def of(cls, dotted: str, *columns: str | ColumnLike, **kwargs: Any) -> Expand:
        return cls(tuple(dotted.split(".")), _columns(columns), **kwargs)


ColumnLike = Union[Column, Expand]


@dataclass(frozen=True)
class Scan:
    """Named entity source with optional filter and navigation path.

    The filter applies to the named entity; each path step is an association
    hop, and the query target is the last hop's entity.
    """

    entity: str
    path: tuple[str, ...] = ()
    where: Expr | None = None
    alias: str | None = None


@dataclass(frozen=True)
class SubQuery:
    query: Select
    alias: str | None = None


@dataclass(frozen=True)
class Join:
    """Join over two or more sources; `on` applies to the last joined argument."""

    args: tuple[Source, ...]
    on: Expr | None = None
    kind: str = "inner"


@dataclass(frozen=True)
class SetOp:
    """Set composition (union, intersect, except) of selects."""

    args: tuple[Select, ...]
    op: str = "union"
    all: bool = False
    alias: str | None = None


Source = Union[Scan, SubQuery, Join, SetOp]


@dataclass(frozen=True)
class Select:
    """Structured read query."""

    source: Source
    columns: tuple[ColumnLike, ...] = ()
    where: Expr | None = None
    having: Expr | None = None
    group_by: tuple[Expr, ...] = ()
    order_by: tuple[OrderBy, ...] = ()
    limit: int | None = None
    offset: int = 0
    one: bool = False
    distinct: bool = False
    localized: bool = False
    search: str | None = None
    use_cache: bool = True

    @classmethod
    def of(cls, entity: str, *columns: str | ColumnLike, **kwargs: Any) -> Select:
        """Select from an entity; string columns become Column(Ref)."""
        return cls(Scan(entity), _columns(columns), **kwargs)


@dataclass(frozen=True)
class RawQuery:
    """Unstructured SQL pass-through; carries no entity references."""

    sql: str
    params: dict[str, Any] = field(default_factory=dict)
    use_cache: bool = True


Query = Union[Select, RawQuery]


def _columns(columns: tuple[str | ColumnLike, ...]) -> tuple[ColumnLike, ...]:
    return tuple(Column.of(c) if isinstance(c, str) else c for c in columns)


def xpr(op: str, *args: Expr) -> Xpr:
    """Shorthand for Xpr(op, args)."""
    return Xpr(op, args)
