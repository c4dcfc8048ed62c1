"""Query AST - closed set of node types for structured and native queries.

The parser builds these from a normalized query document; nothing downstream
of the parser looks at raw dicts. Every node is immutable and can render
itself back to canonical document form with `to_dict()`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from quarry.metadata import FieldMetadata, TableMetadata

# =============================================================================
# Enums
# =============================================================================


class QueryType(str, Enum):
    QUERY = "query"
    NATIVE = "native"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class JoinStrategy(str, Enum):
    LEFT = "left-join"
    RIGHT = "right-join"
    INNER = "inner-join"
    FULL = "full-join"


# =============================================================================
# References and Values
# =============================================================================


@dataclass(frozen=True)
class FieldRef:
    """Reference to a column, by field id or by name with a type hint."""

    id_or_name: int | str
    temporal_unit: str | None = None
    join_alias: str | None = None
    source_field: int | None = None
    base_type: str | None = None
    # Attached by the resolver
    metadata: FieldMetadata | None = field(default=None, compare=False)

    @property
    def is_literal(self) -> bool:
        return isinstance(self.id_or_name, str)

    @property
    def name(self) -> str:
        if self.metadata is not None:
            return self.metadata.name
        return str(self.id_or_name)

    @property
    def effective_type(self) -> str | None:
        if self.metadata is not None:
            return self.metadata.effective_type
        return self.base_type

    def options(self) -> dict[str, Any] | None:
        opts = {
            "temporal-unit": self.temporal_unit,
            "join-alias": self.join_alias,
            "source-field": self.source_field,
            "base-type": self.base_type,
        }
        opts = {k: v for k, v in opts.items() if v is not None}
        return opts or None

    def to_dict(self) -> list[Any]:
        return ["field", self.id_or_name, self.options()]


@dataclass(frozen=True)
class AggregationRef:
    """Reference to the n-th aggregation of the same query (for order-by)."""

    index: int

    def to_dict(self) -> list[Any]:
        return ["aggregation", self.index]


@dataclass(frozen=True)
class ExpressionRef:
    """Reference to a named custom expression."""

    name: str

    def to_dict(self) -> list[Any]:
        return ["expression", self.name]


@dataclass(frozen=True)
class Value:
    """A literal value."""

    value: Any

    def to_dict(self) -> Any:
        return self.value


@dataclass(frozen=True)
class Arithmetic:
    """`+`, `-`, `*` or `/` over two or more arguments."""

    op: str
    args: tuple[Expression, ...]

    def to_dict(self) -> list[Any]:
        return [self.op, *(a.to_dict() for a in self.args)]


# =============================================================================
# Filters
# =============================================================================


@dataclass(frozen=True)
class Compare:
    """`=`, `!=`, `<`, `>`, `<=`, `>=`. Equality may list several values (any match)."""

    op: str
    field: Expression
    values: tuple[Expression, ...]

    def to_dict(self) -> list[Any]:
        return [self.op, self.field.to_dict(), *(v.to_dict() for v in self.values)]


@dataclass(frozen=True)
class Between:
    field: Expression
    min: Expression
    max: Expression

    def to_dict(self) -> list[Any]:
        return ["between", self.field.to_dict(), self.min.to_dict(), self.max.to_dict()]


@dataclass(frozen=True)
class NullCheck:
    """`is-null`, `not-null`, `is-empty` or `not-empty`."""

    op: str
    field: Expression

    def to_dict(self) -> list[Any]:
        return [self.op, self.field.to_dict()]


@dataclass(frozen=True)
class StringFilter:
    """`starts-with`, `ends-with`, `contains` or `does-not-contain`."""

    op: str
    field: Expression
    value: Expression
    case_sensitive: bool = True

    def to_dict(self) -> list[Any]:
        clause = [self.op, self.field.to_dict(), self.value.to_dict()]
        if not self.case_sensitive:
            clause.append({"case-sensitive": False})
        return clause


@dataclass(frozen=True)
class TimeInterval:
    """Relative date filter, e.g. the last 30 days or the current month."""

    field: FieldRef
    n: int | str  # int, or "current" / "last" / "next"
    unit: str
    include_current: bool = False

    @property
    def amount(self) -> int:
        return {"current": 0, "last": -1, "next": 1}.get(self.n, self.n)  # type: ignore[arg-type]

    def to_dict(self) -> list[Any]:
        clause = ["time-interval", self.field.to_dict(), self.n, self.unit]
        if self.include_current:
            clause.append({"include-current": True})
        return clause


@dataclass(frozen=True)
class Logical:
    """`and` / `or` over two or more filters."""

    op: str
    clauses: tuple[Filter, ...]

    def to_dict(self) -> list[Any]:
        return [self.op, *(c.to_dict() for c in self.clauses)]


@dataclass(frozen=True)
class Not:
    clause: Filter

    def to_dict(self) -> list[Any]:
        return ["not", self.clause.to_dict()]


# =============================================================================
# Aggregations and Ordering
# =============================================================================


@dataclass(frozen=True)
class Aggregation:
    """An aggregation such as `count`, `sum` or `count-where`."""

    op: str
    arg: Expression | None = None
    predicate: Filter | None = None
    name: str | None = None
    display_name: str | None = None

    def to_dict(self) -> list[Any]:
        clause: list[Any] = [self.op]
        if self.arg is not None:
            clause.append(self.arg.to_dict())
        if self.predicate is not None:
            clause.append(self.predicate.to_dict())
        if self.name is None and self.display_name is None:
            return clause
        opts = {"name": self.name, "display-name": self.display_name}
        return ["aggregation-options", clause, {k: v for k, v in opts.items() if v is not None}]


@dataclass(frozen=True)
class OrderBy:
    direction: SortDirection
    ref: Expression

    def to_dict(self) -> list[Any]:
        return [self.direction.value, self.ref.to_dict()]


# =============================================================================
# Query Structure
# =============================================================================


@dataclass(frozen=True)
class Page:
    page: int
    items: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.items

    def to_dict(self) -> dict[str, int]:
        return {"page": self.page, "items": self.items}


@dataclass(frozen=True)
class Join:
    alias: str
    condition: Filter
    source_table: int | None = None
    source_query: InnerQuery | NativeQuery | None = None
    fields: str | tuple[FieldRef, ...] = "none"
    strategy: JoinStrategy = JoinStrategy.LEFT
    # Attached by the resolver
    table: TableMetadata | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"alias": self.alias, "condition": self.condition.to_dict()}
        if self.source_table is not None:
            result["source-table"] = self.source_table
        if self.source_query is not None:
            result["source-query"] = self.source_query.to_dict()
        result["fields"] = self.fields if isinstance(self.fields, str) else [f.to_dict() for f in self.fields]
        result["strategy"] = self.strategy.value
        return result


@dataclass(frozen=True)
class InnerQuery:
    """The `query` part of a structured query."""

    source_table: int | str | None = None
    source_query: InnerQuery | NativeQuery | None = None
    joins: tuple[Join, ...] = ()
    expressions: tuple[tuple[str, Expression], ...] = ()
    fields: tuple[Expression, ...] = ()
    breakout: tuple[Expression, ...] = ()
    aggregation: tuple[Aggregation, ...] = ()
    filter: Filter | None = None
    order_by: tuple[OrderBy, ...] = ()
    limit: int | None = None
    page: Page | None = None
    # Attached by the resolver
    table: TableMetadata | None = field(default=None, compare=False)

    def expression(self, name: str) -> Expression | None:
        return dict(self.expressions).get(name)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.source_table is not None:
            result["source-table"] = self.source_table
        if self.source_query is not None:
            result["source-query"] = self.source_query.to_dict()
        if self.joins:
            result["joins"] = [j.to_dict() for j in self.joins]
        if self.expressions:
            result["expressions"] = {name: e.to_dict() for name, e in self.expressions}
        if self.fields:
            result["fields"] = [f.to_dict() for f in self.fields]
        if self.breakout:
            result["breakout"] = [b.to_dict() for b in self.breakout]
        if self.aggregation:
            result["aggregation"] = [a.to_dict() for a in self.aggregation]
        if self.filter is not None:
            result["filter"] = self.filter.to_dict()
        if self.order_by:
            result["order-by"] = [o.to_dict() for o in self.order_by]
        if self.limit is not None:
            result["limit"] = self.limit
        if self.page is not None:
            result["page"] = self.page.to_dict()
        return result


@dataclass(frozen=True)
class TemplateTag:
    """A `{{name}}` placeholder declared by a native query."""

    name: str
    type: str
    display_name: str | None = None
    default: Any = None
    required: bool = False
    dimension: FieldRef | None = None
    widget_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "name": self.name,
            "display-name": self.display_name,
            "type": self.type,
            "default": self.default,
            "required": self.required or None,
            "dimension": self.dimension.to_dict() if self.dimension else None,
            "widget-type": self.widget_type,
        }
        return {k: v for k, v in result.items() if v is not None}


@dataclass(frozen=True)
class NativeQuery:
    """A native query: SQL text with bound params, or a document-store query.

    Compiled structured queries are also represented as `NativeQuery`.
    """

    query: Any
    params: tuple[Any, ...] = ()
    template_tags: tuple[tuple[str, TemplateTag], ...] = ()
    collection: str | None = None
    # Column names the compiler already knows the result will have
    columns: tuple[str, ...] = ()

    def tag(self, name: str) -> TemplateTag | None:
        return dict(self.template_tags).get(name)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"query": self.query}
        if self.params:
            result["params"] = list(self.params)
        if self.template_tags:
            result["template-tags"] = {name: t.to_dict() for name, t in self.template_tags}
        if self.collection is not None:
            result["collection"] = self.collection
        return result


@dataclass(frozen=True)
class Parameter:
    """A value supplied for a template tag or a dashboard filter target."""

    type: str
    target: tuple[Any, ...]
    value: Any = None

    @property
    def tag_name(self) -> str | None:
        """Name of the template tag targeted by `["variable"|"dimension", ["template-tag", name]]`."""
        if len(self.target) == 2 and isinstance(self.target[1], (list, tuple)):
            inner = self.target[1]
            if len(inner) == 2 and inner[0] == "template-tag":
                return inner[1]
        return None

    def to_dict(self) -> dict[str, Any]:
        result = {"type": self.type, "target": _as_list(self.target)}
        if self.value is not None:
            result["value"] = self.value
        return result


@dataclass(frozen=True)
class Constraints:
    max_results: int | None = None
    max_results_bare_rows: int | None = None

    def to_dict(self) -> dict[str, int]:
        result = {"max-results": self.max_results, "max-results-bare-rows": self.max_results_bare_rows}
        return {k: v for k, v in result.items() if v is not None}


@dataclass(frozen=True)
class Query:
    """A complete query: structured (`query`) or native (`native`)."""

    type: QueryType
    database: int | None = None
    query: InnerQuery | None = None
    native: NativeQuery | None = None
    parameters: tuple[Parameter, ...] = ()
    constraints: Constraints | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type.value}
        if self.database is not None:
            result["database"] = self.database
        if self.query is not None:
            result["query"] = self.query.to_dict()
        if self.native is not None:
            result["native"] = self.native.to_dict()
        if self.parameters:
            result["parameters"] = [p.to_dict() for p in self.parameters]
        if self.constraints is not None and self.constraints.to_dict():
            result["constraints"] = self.constraints.to_dict()
        return result


def _as_list(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_as_list(v) for v in value]
    return value


# =============================================================================
# Type Aliases
# =============================================================================

Expression = Union[FieldRef, AggregationRef, ExpressionRef, Value, Arithmetic]
Filter = Union[Compare, Between, NullCheck, StringFilter, TimeInterval, Logical, Not]
Node = Union[Expression, Filter, Aggregation, OrderBy, Join, InnerQuery, NativeQuery, Query]
