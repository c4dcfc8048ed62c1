"""Query parser - build the AST from a normalized query document.

The parser is strict: every clause must be one it knows, with the right
number of arguments. Structured maps (page, constraints, template tags and
parameters) are validated with pydantic models; validation errors are chained
as the cause of the `InvalidQuery` raised here.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError

from quarry.errors import InvalidQuery, validation_message
from quarry.query.ast import (
    Aggregation,
    AggregationRef,
    Arithmetic,
    Between,
    Compare,
    Constraints,
    Expression,
    ExpressionRef,
    FieldRef,
    Filter,
    InnerQuery,
    Join,
    JoinStrategy,
    Logical,
    NativeQuery,
    Not,
    NullCheck,
    OrderBy,
    Page,
    Parameter,
    Query,
    QueryType,
    SortDirection,
    StringFilter,
    TemplateTag,
    TimeInterval,
    Value,
)
from quarry.types import TEMPORAL_UNITS, TRUNCATION_UNITS

CARD_SOURCE_TABLE = re.compile(r"^card__(\d+)$")

TOP_LEVEL_KEYS = frozenset({"type", "database", "query", "native", "parameters", "constraints", "middleware", "info"})
INNER_QUERY_KEYS = frozenset(
    {
        "source-table",
        "source-query",
        "joins",
        "expressions",
        "fields",
        "breakout",
        "aggregation",
        "filter",
        "order-by",
        "limit",
        "page",
    }
)
JOIN_KEYS = frozenset({"alias", "condition", "source-table", "source-query", "fields", "strategy"})
NATIVE_KEYS = frozenset({"query", "template-tags", "collection", "params"})
FIELD_OPTIONS = frozenset({"temporal-unit", "join-alias", "source-field", "base-type"})

COMPARISON_OPERATORS = frozenset({"=", "!=", "<", ">", "<=", ">="})
NULL_CHECKS = frozenset({"is-null", "not-null", "is-empty", "not-empty"})
STRING_FILTERS = frozenset({"starts-with", "ends-with", "contains", "does-not-contain"})
ARITHMETIC_OPERATORS = frozenset({"+", "-", "*", "/"})

# aggregation -> (min args, max args)
AGGREGATION_ARITY = {
    "count": (0, 1),
    "sum": (1, 1),
    "avg": (1, 1),
    "min": (1, 1),
    "max": (1, 1),
    "distinct": (1, 1),
    "stddev": (1, 1),
    "count-where": (1, 1),
    "sum-where": (2, 2),
}


# =============================================================================
# Structured Map Models
# =============================================================================


class PageModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    page: PositiveInt
    items: PositiveInt


class ConstraintsModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    max_results: PositiveInt | None = Field(default=None, alias="max-results")
    max_results_bare_rows: PositiveInt | None = Field(default=None, alias="max-results-bare-rows")


class TemplateTagModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    type: Literal["text", "number", "date", "dimension"]
    display_name: str | None = Field(default=None, alias="display-name")
    default: Any = None
    required: bool = False
    dimension: list[Any] | None = None
    widget_type: str | None = Field(default=None, alias="widget-type")


class ParameterModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "category"
    target: list[Any]
    value: Any = None


def _validate(model: type[BaseModel], value: Any, clause: str) -> Any:
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise InvalidQuery(f"Invalid {clause}: {validation_message(e)}", clause=clause) from e


# =============================================================================
# Helpers
# =============================================================================


def _is_clause(x: Any) -> bool:
    return isinstance(x, (list, tuple)) and len(x) > 0 and isinstance(x[0], str)


def _check_keys(m: dict[str, Any], allowed: frozenset[str], clause: str) -> None:
    unknown = sorted(set(m) - allowed)
    if unknown:
        raise InvalidQuery(f"Unknown {clause} key(s): {', '.join(unknown)}", clause=clause)


def _check_arity(clause: list[Any], minimum: int, maximum: int | None = None) -> None:
    n = len(clause) - 1
    if n < minimum or (maximum is not None and n > maximum):
        expected = f"{minimum}" if minimum == maximum else f"{minimum}..{maximum if maximum is not None else 'n'}"
        raise InvalidQuery(
            f"Wrong number of arguments to {clause[0]}: expected {expected}, got {n}",
            clause=clause[0],
        )


def _freeze(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _int(value: Any, clause: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQuery(f"{clause} must be an integer, got {value!r}", clause=clause)
    return value


# =============================================================================
# Expressions
# =============================================================================


def parse_field(clause: list[Any]) -> FieldRef:
    _check_arity(clause, 2, 2)
    id_or_name, opts = clause[1], clause[2] or {}
    if isinstance(id_or_name, bool) or not isinstance(id_or_name, (int, str)):
        raise InvalidQuery(f"Field must be referenced by id or name, got {id_or_name!r}", clause="field")
    if not isinstance(opts, dict):
        raise InvalidQuery(f"Invalid field options: {opts!r}", clause="field")
    _check_keys(opts, FIELD_OPTIONS, "field option")
    unit = opts.get("temporal-unit")
    if unit is not None and unit not in TEMPORAL_UNITS:
        raise InvalidQuery(f"Unknown temporal unit: {unit}", clause="field", temporal_unit=unit)
    source_field = opts.get("source-field")
    if source_field is not None:
        _int(source_field, "source-field")
    return FieldRef(
        id_or_name=id_or_name,
        temporal_unit=unit,
        join_alias=opts.get("join-alias"),
        source_field=source_field,
        base_type=opts.get("base-type"),
    )


def parse_expression(x: Any) -> Expression:
    if not _is_clause(x):
        if isinstance(x, (dict, list, tuple)):
            raise InvalidQuery(f"Invalid expression: {x!r}", clause="expression")
        return Value(x)
    name = x[0]
    if name == "field":
        return parse_field(x)
    if name == "aggregation":
        _check_arity(x, 1, 1)
        return AggregationRef(_int(x[1], "aggregation"))
    if name == "expression":
        _check_arity(x, 1, 1)
        if not isinstance(x[1], str):
            raise InvalidQuery(f"Expression name must be a string: {x!r}", clause="expression")
        return ExpressionRef(x[1])
    if name == "value":
        _check_arity(x, 1, 2)
        return Value(x[1])
    if name in ARITHMETIC_OPERATORS:
        _check_arity(x, 2)
        return Arithmetic(name, tuple(parse_expression(a) for a in x[1:]))
    raise InvalidQuery(f"Unknown expression clause: {name}", clause=name)


def _parse_ref(x: Any, clause: str) -> Expression:
    ref = parse_expression(x)
    if not isinstance(ref, (FieldRef, ExpressionRef)):
        raise InvalidQuery(f"{clause} expects a field or expression reference, got {x!r}", clause=clause)
    return ref


# =============================================================================
# Filters
# =============================================================================


def parse_filter(x: Any) -> Filter:
    if not _is_clause(x):
        raise InvalidQuery(f"Invalid filter clause: {x!r}", clause="filter")
    name = x[0]

    if name in ("and", "or"):
        _check_arity(x, 2)
        return Logical(name, tuple(parse_filter(c) for c in x[1:]))
    if name == "not":
        _check_arity(x, 1, 1)
        return Not(parse_filter(x[1]))
    if name in COMPARISON_OPERATORS:
        if name in ("=", "!="):
            _check_arity(x, 2)
        else:
            _check_arity(x, 2, 2)
        return Compare(name, parse_expression(x[1]), tuple(parse_expression(v) for v in x[2:]))
    if name == "between":
        _check_arity(x, 3, 3)
        return Between(parse_expression(x[1]), parse_expression(x[2]), parse_expression(x[3]))
    if name in NULL_CHECKS:
        _check_arity(x, 1, 1)
        return NullCheck(name, parse_expression(x[1]))
    if name in STRING_FILTERS:
        _check_arity(x, 2, 3)
        opts = x[3] if len(x) == 4 else {}
        if not isinstance(opts, dict):
            raise InvalidQuery(f"Invalid {name} options: {opts!r}", clause=name)
        _check_keys(opts, frozenset({"case-sensitive"}), f"{name} option")
        return StringFilter(
            name,
            parse_expression(x[1]),
            parse_expression(x[2]),
            case_sensitive=bool(opts.get("case-sensitive", True)),
        )
    if name == "time-interval":
        return _parse_time_interval(x)
    raise InvalidQuery(f"Unknown filter clause: {name}", clause=name)


def _parse_time_interval(x: list[Any]) -> TimeInterval:
    _check_arity(x, 3, 4)
    field = parse_expression(x[1])
    if not isinstance(field, FieldRef):
        raise InvalidQuery("time-interval expects a field", clause="time-interval")
    n, unit = x[2], x[3]
    if not (n in ("current", "last", "next") or (isinstance(n, int) and not isinstance(n, bool))):
        raise InvalidQuery(f"Invalid time-interval amount: {n!r}", clause="time-interval")
    if unit not in TRUNCATION_UNITS:
        raise InvalidQuery(f"Invalid time-interval unit: {unit!r}", clause="time-interval")
    opts = x[4] if len(x) == 5 else {}
    if not isinstance(opts, dict):
        raise InvalidQuery(f"Invalid time-interval options: {opts!r}", clause="time-interval")
    _check_keys(opts, frozenset({"include-current"}), "time-interval option")
    return TimeInterval(field, n, unit, include_current=bool(opts.get("include-current", False)))


# =============================================================================
# Aggregations and Ordering
# =============================================================================


def parse_aggregation(x: Any) -> Aggregation:
    if not _is_clause(x):
        raise InvalidQuery(f"Invalid aggregation: {x!r}", clause="aggregation")
    name = x[0]
    if name == "aggregation-options":
        _check_arity(x, 2, 2)
        inner = parse_aggregation(x[1])
        opts = x[2] or {}
        if not isinstance(opts, dict):
            raise InvalidQuery(f"Invalid aggregation options: {opts!r}", clause=name)
        _check_keys(opts, frozenset({"name", "display-name"}), "aggregation option")
        return Aggregation(
            inner.op,
            inner.arg,
            inner.predicate,
            name=opts.get("name"),
            display_name=opts.get("display-name"),
        )
    if name not in AGGREGATION_ARITY:
        raise InvalidQuery(f"Unknown aggregation: {name}", clause=name)
    _check_arity(x, *AGGREGATION_ARITY[name])
    if name == "count-where":
        return Aggregation(name, predicate=parse_filter(x[1]))
    if name == "sum-where":
        return Aggregation(name, parse_expression(x[1]), parse_filter(x[2]))
    return Aggregation(name, parse_expression(x[1]) if len(x) > 1 else None)


def _parse_order_by(x: Any, aggregations: tuple[Aggregation, ...]) -> OrderBy:
    if not _is_clause(x) or x[0] not in ("asc", "desc"):
        raise InvalidQuery(f"Invalid order-by clause: {x!r}", clause="order-by")
    _check_arity(x, 1, 1)
    ref = parse_expression(x[1])
    if isinstance(ref, AggregationRef) and not 0 <= ref.index < len(aggregations):
        raise InvalidQuery(f"order-by references missing aggregation {ref.index}", clause="order-by")
    if not isinstance(ref, (FieldRef, AggregationRef, ExpressionRef)):
        raise InvalidQuery(f"Cannot order by {x[1]!r}", clause="order-by")
    return OrderBy(SortDirection(x[0]), ref)


# =============================================================================
# Query Structure
# =============================================================================


def _parse_source_table(value: Any) -> int | str:
    if isinstance(value, str) and CARD_SOURCE_TABLE.match(value):
        return value
    return _int(value, "source-table")


def _parse_source_query(value: Any) -> InnerQuery | NativeQuery:
    if not isinstance(value, dict):
        raise InvalidQuery(f"Invalid source-query: {value!r}", clause="source-query")
    if "native" in value:
        _check_keys(value, frozenset({"native"}), "source-query")
        return parse_native(value["native"])
    return parse_inner_query(value)


def parse_join(m: Any) -> Join:
    if not isinstance(m, dict):
        raise InvalidQuery(f"Invalid join: {m!r}", clause="joins")
    _check_keys(m, JOIN_KEYS, "join")
    alias = m.get("alias")
    if not isinstance(alias, str) or not alias:
        raise InvalidQuery("Join is missing an alias", clause="joins")
    if "condition" not in m:
        raise InvalidQuery(f"Join {alias} is missing a condition", clause="joins", alias=alias)
    if ("source-table" in m) == ("source-query" in m):
        raise InvalidQuery(
            f"Join {alias} needs exactly one of source-table or source-query", clause="joins", alias=alias
        )
    fields = m.get("fields", "none")
    if isinstance(fields, str):
        if fields not in ("all", "none"):
            raise InvalidQuery(f"Invalid join fields: {fields!r}", clause="joins", alias=alias)
    else:
        fields = tuple(_parse_join_field(f, alias) for f in fields)
    try:
        strategy = JoinStrategy(m.get("strategy", JoinStrategy.LEFT.value))
    except ValueError:
        raise InvalidQuery(f"Unknown join strategy: {m.get('strategy')}", clause="joins", alias=alias) from None
    source_table = m.get("source-table")
    return Join(
        alias=alias,
        condition=parse_filter(m["condition"]),
        source_table=_int(source_table, "source-table") if source_table is not None else None,
        source_query=_parse_source_query(m["source-query"]) if "source-query" in m else None,
        fields=fields,
        strategy=strategy,
    )


def _parse_join_field(x: Any, alias: str) -> FieldRef:
    ref = parse_expression(x)
    if not isinstance(ref, FieldRef):
        raise InvalidQuery(f"Join fields must be fields, got {x!r}", clause="joins", alias=alias)
    return ref


def parse_inner_query(m: Any) -> InnerQuery:
    if not isinstance(m, dict):
        raise InvalidQuery(f"Invalid query: {m!r}", clause="query")
    _check_keys(m, INNER_QUERY_KEYS, "query")
    if ("source-table" in m) == ("source-query" in m):
        raise InvalidQuery("Query needs exactly one of source-table or source-query", clause="source-table")

    aggregation = tuple(parse_aggregation(a) for a in m.get("aggregation", ()))
    limit = m.get("limit")
    if limit is not None and _int(limit, "limit") < 0:
        raise InvalidQuery(f"limit must not be negative, got {limit}", clause="limit")
    page = m.get("page")
    if page is not None:
        model = _validate(PageModel, page, "page")
        page = Page(model.page, model.items)

    expressions = m.get("expressions", {})
    if not isinstance(expressions, dict):
        raise InvalidQuery(f"Invalid expressions: {expressions!r}", clause="expressions")

    return InnerQuery(
        source_table=_parse_source_table(m["source-table"]) if "source-table" in m else None,
        source_query=_parse_source_query(m["source-query"]) if "source-query" in m else None,
        joins=tuple(parse_join(j) for j in m.get("joins", ())),
        expressions=tuple((name, parse_expression(e)) for name, e in expressions.items()),
        fields=tuple(_parse_ref(f, "fields") for f in m.get("fields", ())),
        breakout=tuple(_parse_ref(b, "breakout") for b in m.get("breakout", ())),
        aggregation=aggregation,
        filter=parse_filter(m["filter"]) if "filter" in m else None,
        order_by=tuple(_parse_order_by(o, aggregation) for o in m.get("order-by", ())),
        limit=limit,
        page=page,
    )


def parse_template_tag(name: str, tag: Any) -> TemplateTag:
    if not isinstance(tag, dict):
        raise InvalidQuery(f"Invalid template tag {name}: {tag!r}", clause="template-tags", tag=name)
    model = _validate(TemplateTagModel, {"name": name, **tag}, "template-tags")
    dimension = None
    if model.type == "dimension":
        if model.dimension is None:
            raise InvalidQuery(f"Field filter {name} has no dimension", clause="template-tags", tag=name)
        dimension = parse_expression(model.dimension)
        if not isinstance(dimension, FieldRef):
            raise InvalidQuery(f"Field filter {name} must reference a field", clause="template-tags", tag=name)
    return TemplateTag(
        name=model.name,
        type=model.type,
        display_name=model.display_name,
        default=model.default,
        required=model.required,
        dimension=dimension,
        widget_type=model.widget_type,
    )


def parse_native(m: Any) -> NativeQuery:
    if not isinstance(m, dict):
        raise InvalidQuery(f"Invalid native query: {m!r}", clause="native")
    _check_keys(m, NATIVE_KEYS, "native")
    if "query" not in m:
        raise InvalidQuery("Native query is missing its query", clause="native")
    tags = m.get("template-tags", {})
    if not isinstance(tags, dict):
        raise InvalidQuery(f"Invalid template-tags: {tags!r}", clause="template-tags")
    return NativeQuery(
        query=m["query"],
        params=tuple(m.get("params", ())),
        template_tags=tuple((name, parse_template_tag(name, tag)) for name, tag in tags.items()),
        collection=m.get("collection"),
    )


def parse_parameter(p: Any) -> Parameter:
    model = _validate(ParameterModel, p, "parameters")
    return Parameter(type=model.type, target=_freeze(model.target), value=model.value)


def parse(normalized: dict[str, Any]) -> Query:
    """Parse a normalized query document into a `Query`.

    Raises:
        InvalidQuery: For unknown clauses, wrong arities or invalid structured maps.
    """
    if not isinstance(normalized, dict):
        raise InvalidQuery(f"Query must be a map, got {type(normalized).__name__}", clause="query")
    _check_keys(normalized, TOP_LEVEL_KEYS, "top-level")
    try:
        query_type = QueryType(normalized.get("type"))
    except ValueError:
        raise InvalidQuery(f"Invalid query type: {normalized.get('type')!r}", clause="type") from None

    database = normalized.get("database")
    if database is not None:
        database = _int(database, "database")

    constraints = normalized.get("constraints")
    if constraints is not None:
        model = _validate(ConstraintsModel, constraints, "constraints")
        constraints = Constraints(model.max_results, model.max_results_bare_rows)

    parameters = tuple(parse_parameter(p) for p in normalized.get("parameters", ()))

    if query_type is QueryType.QUERY:
        if "query" not in normalized:
            raise InvalidQuery("Query of type query is missing its query clause", clause="query")
        return Query(
            type=query_type,
            database=database,
            query=parse_inner_query(normalized["query"]),
            parameters=parameters,
            constraints=constraints,
        )

    if "native" not in normalized:
        raise InvalidQuery("Query of type native is missing its native clause", clause="native")
    return Query(
        type=query_type,
        database=database,
        native=parse_native(normalized["native"]),
        parameters=parameters,
        constraints=constraints,
    )
