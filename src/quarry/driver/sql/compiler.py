"""SQL query compiler - structured query AST to an hsql SELECT.

Compilation runs one stage per top-level clause, always in the same order:

    source-table -> breakout -> aggregation -> fields -> filter
    -> joins -> order-by -> page -> limit

Each stage is an `apply_top_level_clause` implementation keyed by clause name,
so drivers replace a single stage (e.g. Oracle's ROWNUM limit) without touching
the others. Expressions compile through `to_sql`, keyed by AST node type.

Compilation is pure: it never connects to a database.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any

from quarry.driver.base import escape_alias, mbql_to_native, supports
from quarry.driver.sql.capabilities import (
    add_interval,
    apply_top_level_clause,
    cast_temporal_string,
    current_datetime,
    date_bucket,
    optimized_temporal_buckets,
    to_sql,
    unix_timestamp,
)
from quarry.driver.sql.hsql import (
    Alias,
    BetweenOp,
    BinaryOp,
    Call,
    Case,
    Cast,
    Expr,
    Identifier,
    JoinClause,
    Junction,
    Literal,
    Negation,
    OrderItem,
    Over,
    Param,
    Postfix,
    Raw,
    Select,
    Star,
    Subquery,
    and_,
    format_sql,
    or_,
)
from quarry.errors import InvalidQuery, UnsupportedOperation
from quarry.query.ast import (
    Aggregation,
    AggregationRef,
    Arithmetic,
    Between,
    Compare,
    ExpressionRef,
    FieldRef,
    InnerQuery,
    Join,
    JoinStrategy,
    Logical,
    NativeQuery,
    Not,
    NullCheck,
    Page,
    Query,
    QueryType,
    SortDirection,
    StringFilter,
    TimeInterval,
    Value,
)

logger = logging.getLogger(__name__)

SOURCE_ALIAS = "source"
ROWNUM_ALIAS = "__rownum__"

CLAUSE_ORDER = (
    "source-table",
    "breakout",
    "aggregation",
    "fields",
    "filter",
    "joins",
    "order-by",
    "page",
    "limit",
)

JOIN_KINDS = {
    JoinStrategy.LEFT: "LEFT JOIN",
    JoinStrategy.RIGHT: "RIGHT JOIN",
    JoinStrategy.INNER: "INNER JOIN",
    JoinStrategy.FULL: "FULL JOIN",
}

AGGREGATION_FUNCTIONS = {
    "sum": "SUM",
    "avg": "AVG",
    "min": "MIN",
    "max": "MAX",
    "stddev": "STDDEV_POP",
}

UNIX_PRECISIONS = {
    "Coercion/UNIXSeconds->DateTime": "seconds",
    "Coercion/UNIXMilliSeconds->DateTime": "milliseconds",
    "Coercion/UNIXMicroSeconds->DateTime": "microseconds",
}

TEMPORAL_STRING_COERCIONS = frozenset(
    {
        "Coercion/ISO8601->Date",
        "Coercion/ISO8601->DateTime",
        "Coercion/ISO8601->Time",
        "Coercion/YYYYMMDDHHMMSSString->Temporal",
    }
)


# =============================================================================
# Compile Context
# =============================================================================


@dataclass
class CompileContext:
    """State shared by the stages compiling one inner query."""

    driver: str
    inner: InnerQuery
    # Expressions each breakout groups by; order-by reuses them
    breakout_exprs: dict[Any, tuple[Expr, ...]] = field(default_factory=dict)
    aggregation_exprs: list[Expr] = field(default_factory=list)
    aliases: set[str] = field(default_factory=set)

    @property
    def nested(self) -> bool:
        return self.inner.source_query is not None

    def compile(self, node: Any) -> Expr:
        return to_sql(self.driver, node, self)

    def unique_alias(self, name: str) -> str:
        """Escape `name` for the driver and make it unique within this SELECT."""
        candidate = escape_alias(self.driver, name)
        i = 2
        while candidate in self.aliases:
            candidate = escape_alias(self.driver, f"{name}_{i}")
            i += 1
        self.aliases.add(candidate)
        return candidate


def _unsupported(driver: str, clause: str, message: str | None = None) -> UnsupportedOperation:
    return UnsupportedOperation(
        message or f"{driver} does not support {clause}",
        driver=driver,
        clause=clause,
    )


# =============================================================================
# Expressions
# =============================================================================


def field_identifier(driver: str, ref: FieldRef, ctx: CompileContext) -> Expr:
    """The column behind `ref`, qualified by table, join alias or nested source."""
    if ref.source_field is not None:
        raise _unsupported(
            driver,
            "source-field",
            "Implicit joins through source-field are not supported; add an explicit join",
        )
    name = ref.name
    if ref.join_alias:
        return Identifier.of(ref.join_alias, name)
    if ctx.nested:
        return Identifier.of(SOURCE_ALIAS, name)
    table = ctx.inner.table
    if table is not None and (ref.metadata is None or ref.metadata.table_id in (None, table.id)):
        return Identifier.of(table.schema, table.name, name)
    return Identifier.of(name)


def coerce_field(driver: str, ref: FieldRef, expr: Expr) -> Expr:
    strategy = ref.metadata.coercion_strategy if ref.metadata else None
    if strategy is None:
        return expr
    if strategy in UNIX_PRECISIONS:
        return unix_timestamp(driver, UNIX_PRECISIONS[strategy], expr)
    if strategy in TEMPORAL_STRING_COERCIONS:
        return cast_temporal_string(driver, strategy, expr)
    if strategy == "Coercion/String->Float":
        return Cast(expr, "FLOAT")
    return expr


def field_expr(driver: str, ref: FieldRef, ctx: CompileContext, unit: str | None = None) -> Expr:
    expr = coerce_field(driver, ref, field_identifier(driver, ref, ctx))
    unit = unit or ref.temporal_unit
    if unit is not None and unit != "default":
        expr = date_bucket(driver, unit, expr)
    return expr


@to_sql.register("sql", key=FieldRef)
def _(driver: str, ref: FieldRef, ctx: CompileContext) -> Expr:
    return field_expr(driver, ref, ctx)


@to_sql.register("sql", key=AggregationRef)
def _(driver: str, ref: AggregationRef, ctx: CompileContext) -> Expr:
    if not 0 <= ref.index < len(ctx.aggregation_exprs):
        raise InvalidQuery(f"No aggregation at index {ref.index}", clause="aggregation")
    return ctx.aggregation_exprs[ref.index]


@to_sql.register("sql", key=ExpressionRef)
def _(driver: str, ref: ExpressionRef, ctx: CompileContext) -> Expr:
    expression = ctx.inner.expression(ref.name)
    if expression is None:
        raise InvalidQuery(f"No expression named {ref.name!r}", clause="expression", expression=ref.name)
    return ctx.compile(expression)


@to_sql.register("sql", key=Value)
def _(driver: str, value: Value, ctx: CompileContext) -> Expr:
    if value.value is None:
        return Raw("NULL")
    return Param(value.value)


@to_sql.register("sql", key=Arithmetic)
def _(driver: str, node: Arithmetic, ctx: CompileContext) -> Expr:
    args = [ctx.compile(a) for a in node.args]
    result = args[0]
    for arg in args[1:]:
        if node.op == "/":
            # Float division; NULL instead of a division-by-zero error
            result = BinaryOp("/", Cast(result, "FLOAT"), Call("NULLIF", (arg, Literal(0))))
        else:
            result = BinaryOp(node.op, result, arg)
    return result


# =============================================================================
# Filters
# =============================================================================


@to_sql.register("sql", key=Compare)
def _(driver: str, node: Compare, ctx: CompileContext) -> Expr:
    lhs = ctx.compile(node.field)
    if node.op in ("=", "!="):
        clauses = []
        for v in node.values:
            if isinstance(v, Value) and v.value is None:
                clauses.append(Postfix(lhs, "IS NULL" if node.op == "=" else "IS NOT NULL"))
            else:
                clauses.append(BinaryOp("=" if node.op == "=" else "<>", lhs, ctx.compile(v)))
        return or_(*clauses) if node.op == "=" else and_(*clauses)
    return BinaryOp(node.op, lhs, ctx.compile(node.values[0]))


@to_sql.register("sql", key=Between)
def _(driver: str, node: Between, ctx: CompileContext) -> Expr:
    return BetweenOp(ctx.compile(node.field), ctx.compile(node.min), ctx.compile(node.max))


@to_sql.register("sql", key=NullCheck)
def _(driver: str, node: NullCheck, ctx: CompileContext) -> Expr:
    expr = ctx.compile(node.field)
    if node.op == "is-null":
        return Postfix(expr, "IS NULL")
    if node.op == "not-null":
        return Postfix(expr, "IS NOT NULL")
    if node.op == "is-empty":
        return Junction("OR", (Postfix(expr, "IS NULL"), BinaryOp("=", expr, Literal(""))))
    return Junction("AND", (Postfix(expr, "IS NOT NULL"), BinaryOp("<>", expr, Literal(""))))


LIKE_PATTERNS = {
    "starts-with": "{}%",
    "ends-with": "%{}",
    "contains": "%{}%",
    "does-not-contain": "%{}%",
}


@to_sql.register("sql", key=StringFilter)
def _(driver: str, node: StringFilter, ctx: CompileContext) -> Expr:
    if not isinstance(node.value, Value) or not isinstance(node.value.value, str):
        raise _unsupported(driver, node.op, f"{node.op} only supports string literal values")
    expr = ctx.compile(node.field)
    pattern = LIKE_PATTERNS[node.op].format(node.value.value)
    if not node.case_sensitive:
        expr = Call("LOWER", (expr,))
        pattern = pattern.lower()
    if node.op == "does-not-contain":
        return Junction("OR", (BinaryOp("NOT LIKE", expr, Param(pattern)), Postfix(expr, "IS NULL")))
    return BinaryOp("LIKE", expr, Param(pattern))


@to_sql.register("sql", key=TimeInterval)
def _(driver: str, node: TimeInterval, ctx: CompileContext) -> Expr:
    bucketed = field_expr(driver, node.field, ctx, unit=node.unit)
    now = date_bucket(driver, node.unit, current_datetime(driver))
    n = node.amount
    if n == 0:
        return BinaryOp("=", bucketed, now)
    if n < 0:
        low, high = n, 0 if node.include_current else -1
    else:
        low, high = 0 if node.include_current else 1, n
    return BetweenOp(
        bucketed,
        add_interval(driver, now, low, node.unit),
        add_interval(driver, now, high, node.unit),
    )


@to_sql.register("sql", key=Logical)
def _(driver: str, node: Logical, ctx: CompileContext) -> Expr:
    return Junction(node.op.upper(), tuple(ctx.compile(c) for c in node.clauses))


@to_sql.register("sql", key=Not)
def _(driver: str, node: Not, ctx: CompileContext) -> Expr:
    return Negation(ctx.compile(node.clause))


# =============================================================================
# Aggregations
# =============================================================================


def aggregation_name(agg: Aggregation) -> str:
    if agg.name:
        return agg.name
    return "count" if agg.op == "distinct" else agg.op


@to_sql.register("sql", key=Aggregation)
def _(driver: str, agg: Aggregation, ctx: CompileContext) -> Expr:
    if agg.op == "count":
        return Call("COUNT", (ctx.compile(agg.arg),) if agg.arg is not None else (Star(),))
    if agg.op == "distinct":
        return Call("COUNT", (ctx.compile(agg.arg),), distinct=True)
    if agg.op == "count-where":
        return Call("SUM", (Case(((ctx.compile(agg.predicate), Literal(1)),), Literal(0)),))
    if agg.op == "sum-where":
        return Call("SUM", (Case(((ctx.compile(agg.predicate), ctx.compile(agg.arg)),), Literal(0)),))
    if agg.op == "stddev" and not supports(driver, "standard-deviation-aggregations"):
        raise _unsupported(driver, "stddev")
    return Call(AGGREGATION_FUNCTIONS[agg.op], (ctx.compile(agg.arg),))


# =============================================================================
# Clause Stages
# =============================================================================


def _native_source(native: NativeQuery) -> Raw:
    if not isinstance(native.query, str):
        raise InvalidQuery("Native source queries must be SQL strings", clause="source-query")
    return Raw(native.query.strip().rstrip(";"), tuple(native.params))


def _source_expr(driver: str, table: Any, source_query: Any, alias: str) -> Identifier | Subquery:
    if isinstance(source_query, InnerQuery):
        return Subquery(compile_inner(driver, source_query), alias)
    if isinstance(source_query, NativeQuery):
        return Subquery(_native_source(source_query), alias)
    if table is None:
        raise InvalidQuery("Query must be resolved against metadata before it is compiled", clause="source-table")
    return Identifier.of(table.schema, table.name)


@apply_top_level_clause.register("sql", key="source-table")
def _(driver: str, clause: str, ctx: CompileContext, select: Select) -> Select:
    if ctx.nested and not supports(driver, "nested-queries"):
        raise _unsupported(driver, "source-query")
    source = _source_expr(driver, ctx.inner.table, ctx.inner.source_query, SOURCE_ALIAS)
    return dataclasses.replace(select, from_=source)


def _ref_name(ref: Any) -> str:
    if isinstance(ref, ExpressionRef):
        return ref.name
    if isinstance(ref, FieldRef):
        return ref.name
    return "expression"


@apply_top_level_clause.register("sql", key="breakout")
def _(driver: str, clause: str, ctx: CompileContext, select: Select) -> Select:
    group_by = list(select.group_by)
    columns = []
    for ref in ctx.inner.breakout:
        expr = ctx.compile(ref)
        parts = None
        if isinstance(ref, FieldRef) and ref.temporal_unit not in (None, "default"):
            parts = optimized_temporal_buckets(driver, ref.temporal_unit, field_expr(driver, ref, ctx, unit="default"))
        parts = tuple(parts) if parts else (expr,)
        ctx.breakout_exprs[ref] = parts
        group_by.extend(parts)
        columns.append(Alias(expr, ctx.unique_alias(_ref_name(ref))))
    return dataclasses.replace(select, select=select.select + tuple(columns), group_by=tuple(group_by))


@apply_top_level_clause.register("sql", key="aggregation")
def _(driver: str, clause: str, ctx: CompileContext, select: Select) -> Select:
    columns = []
    for agg in ctx.inner.aggregation:
        expr = ctx.compile(agg)
        ctx.aggregation_exprs.append(expr)
        columns.append(Alias(expr, ctx.unique_alias(aggregation_name(agg))))
    return select.add_select(*columns)


@apply_top_level_clause.register("sql", key="fields")
def _(driver: str, clause: str, ctx: CompileContext, select: Select) -> Select:
    columns = [Alias(ctx.compile(ref), ctx.unique_alias(_ref_name(ref))) for ref in ctx.inner.fields]
    return select.add_select(*columns)


@apply_top_level_clause.register("sql", key="filter")
def _(driver: str, clause: str, ctx: CompileContext, select: Select) -> Select:
    return select.add_where(ctx.compile(ctx.inner.filter))


def compile_join(driver: str, join: Join, ctx: CompileContext) -> JoinClause:
    if not supports(driver, join.strategy.value):
        raise _unsupported(driver, join.strategy.value)
    source = _source_expr(driver, join.table, join.source_query, join.alias)
    return JoinClause(JOIN_KINDS[join.strategy], source, join.alias, ctx.compile(join.condition))


@apply_top_level_clause.register("sql", key="joins")
def _(driver: str, clause: str, ctx: CompileContext, select: Select) -> Select:
    joins = []
    columns = []
    for join in ctx.inner.joins:
        joins.append(compile_join(driver, join, ctx))
        if isinstance(join.fields, tuple):
            for ref in join.fields:
                ref = ref if ref.join_alias else dataclasses.replace(ref, join_alias=join.alias)
                columns.append(Alias(ctx.compile(ref), ctx.unique_alias(f"{join.alias}__{ref.name}")))
    return dataclasses.replace(select, joins=select.joins + tuple(joins), select=select.select + tuple(columns))


@apply_top_level_clause.register("sql", key="order-by")
def _(driver: str, clause: str, ctx: CompileContext, select: Select) -> Select:
    items = []
    for order in ctx.inner.order_by:
        direction = "DESC" if order.direction is SortDirection.DESC else "ASC"
        # Mirror the breakout so optimized buckets are ordered by what is grouped
        exprs = ctx.breakout_exprs.get(order.ref) or (ctx.compile(order.ref),)
        items.extend(OrderItem(e, direction) for e in exprs)
    return dataclasses.replace(select, order_by=select.order_by + tuple(items))


@apply_top_level_clause.register("sql", key="page")
def _(driver: str, clause: str, ctx: CompileContext, select: Select) -> Select:
    page = ctx.inner.page
    if not supports(driver, "offset"):
        return emulated_page(driver, select, page)
    return dataclasses.replace(select, limit=page.items, offset=page.offset or None)


@apply_top_level_clause.register("sql", key="limit")
def _(driver: str, clause: str, ctx: CompileContext, select: Select) -> Select:
    limit = ctx.inner.limit
    if select.limit is not None:
        limit = min(limit, select.limit)
    return dataclasses.replace(select, limit=limit)


def emulated_page(driver: str, select: Select, page: Page) -> Select:
    """Paginate with ROW_NUMBER() for databases without OFFSET.

        SELECT * FROM (SELECT ..., ROW_NUMBER() OVER (ORDER BY ...) AS __rownum__ FROM ...) __paged__
        WHERE __rownum__ BETWEEN offset + 1 AND offset + items
        ORDER BY __rownum__

    The same shape is used for every page, including the first. The
    `__rownum__` column is dropped from results by the execution engine.
    """
    row_number = Alias(Over(Call("ROW_NUMBER"), select.order_by), ROWNUM_ALIAS)
    columns = select.select or (Star(),)
    inner = dataclasses.replace(select, select=columns + (row_number,), order_by=())
    rownum = Identifier.of("__paged__", ROWNUM_ALIAS)
    return Select(
        select=(Star(),),
        from_=Subquery(inner, "__paged__"),
        where=BetweenOp(rownum, Literal(page.offset + 1), Literal(page.offset + page.items)),
        order_by=(OrderItem(rownum, "ASC"),),
    )


def _has_clause(inner: InnerQuery, clause: str) -> bool:
    if clause == "source-table":
        return True
    value = getattr(inner, clause.replace("-", "_"))
    return value is not None and value != ()


def compile_inner(driver: str, inner: InnerQuery) -> Select:
    """Compile one level of a structured query into a SELECT."""
    ctx = CompileContext(driver, inner)
    select = Select()
    for clause in CLAUSE_ORDER:
        if _has_clause(inner, clause):
            select = apply_top_level_clause(driver, clause, ctx, select)
    return select


@mbql_to_native.register("sql")
def _(driver: str, query: Query) -> NativeQuery:
    if query.type is not QueryType.QUERY:
        raise InvalidQuery("Only structured queries can be compiled", clause="type")
    select = compile_inner(driver, query.query)
    sql, params = format_sql(select, driver)
    logger.debug(f"Compiled SQL for {driver}: {sql}")
    return NativeQuery(query=sql, params=tuple(params))
