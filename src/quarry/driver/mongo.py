"""MongoDB driver, on pymongo (install with `pip install quarry[mongo]`).

Structured queries compile to an aggregation pipeline rather than SQL:

    $match -> $group -> $project -> $sort -> $skip -> $limit

Native queries are a JSON array of pipeline stages run against
`native.collection`; template tags are substituted with JSON-encoded values.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
from typing import Any

from quarry.driver import register
from quarry.driver.base import (
    cancel_query,
    connect,
    connection_spec,
    describe_database,
    describe_table,
    execute_reducible_query,
    humanize_error,
    mbql_to_native,
    substitute_native_parameters,
    supports,
)
from quarry.errors import ConfigError, DriverExecutionError, InvalidQuery, QuarryError, UnsupportedOperation
from quarry.metadata import TableMetadata
from quarry.query.ast import (
    Aggregation,
    AggregationRef,
    Arithmetic,
    Between,
    Compare,
    FieldRef,
    InnerQuery,
    Logical,
    NativeQuery,
    Not,
    NullCheck,
    Parameter,
    Query,
    QueryType,
    SortDirection,
    StringFilter,
    TemplateTag,
    Value,
)
from quarry.query.native import NO_VALUE, render
from quarry.types import base_type_for_value

logger = logging.getLogger(__name__)

register("mongo")

# Documents sampled per collection when describing its fields
SAMPLE_SIZE = 500

for _feature in ("basic-aggregations", "standard-deviation-aggregations", "native-parameters"):
    supports.register("mongo", key=_feature)(lambda driver, feature, database=None: True)


class MongoConnection:
    """A client and the database queries run against; `close()` closes the client."""

    def __init__(self, client: Any, database_name: str) -> None:
        self.client = client
        self.database = client[database_name]

    def close(self) -> None:
        self.client.close()


@connection_spec.register("mongo")
def _(driver: str, details: dict[str, Any]) -> dict[str, Any]:
    dbname = details.get("dbname") or details.get("db")
    if not dbname:
        raise ConfigError("MongoDB connection details need a `dbname`", driver=driver)
    if details.get("conn_uri"):
        return {"host": details["conn_uri"], "dbname": dbname}
    spec = {
        "host": details.get("host", "localhost"),
        "port": int(details.get("port", 27017)),
        "username": details.get("user"),
        "password": details.get("password"),
        "authSource": details.get("authdb"),
        "tls": bool(details.get("ssl", False)),
        "dbname": dbname,
    }
    return {k: v for k, v in spec.items() if v is not None}


@connect.register("mongo")
def _(driver: str, details: dict[str, Any]) -> MongoConnection:
    try:
        import pymongo
    except ImportError as e:
        raise ConfigError(
            "The mongo driver needs pymongo. Install it with: pip install 'quarry[mongo]'",
            driver=driver,
        ) from e
    spec = connection_spec(driver, details)
    dbname = spec.pop("dbname")
    return MongoConnection(pymongo.MongoClient(**spec), dbname)


# =============================================================================
# Compiler
# =============================================================================

TRUNCATION_UNITS = ("minute", "hour", "day", "week", "month", "quarter", "year")

EXTRACTIONS = {
    "minute-of-hour": "$minute",
    "hour-of-day": "$hour",
    "day-of-week": "$dayOfWeek",
    "day-of-month": "$dayOfMonth",
    "day-of-year": "$dayOfYear",
    "week-of-year": "$week",
    "month-of-year": "$month",
}

COMPARISONS = {"<": "$lt", ">": "$gt", "<=": "$lte", ">=": "$gte"}

ARITHMETIC = {"+": "$add", "-": "$subtract", "*": "$multiply", "/": "$divide"}

ACCUMULATORS = {"sum": "$sum", "avg": "$avg", "min": "$min", "max": "$max", "stddev": "$stdDevPop"}


def _unsupported(clause: str, message: str | None = None) -> UnsupportedOperation:
    return UnsupportedOperation(message or f"mongo does not support {clause}", driver="mongo", clause=clause)


class PipelineCompiler:
    """Compiles one inner query into aggregation pipeline stages."""

    def __init__(self, inner: InnerQuery) -> None:
        self.inner = inner
        # breakout/field ref -> output column name
        self.output_names: dict[Any, str] = {}
        self.aggregation_names: list[str] = []
        self.columns: list[str] = []

    def _unique(self, name: str) -> str:
        name = name.replace(".", "_").lstrip("$")
        candidate, i = name, 2
        while candidate in self.columns:
            candidate = f"{name}_{i}"
            i += 1
        self.columns.append(candidate)
        return candidate

    # -------------------------------------------------------------------------
    # Expressions (aggregation expression language)
    # -------------------------------------------------------------------------

    def expr(self, node: Any) -> Any:
        if isinstance(node, FieldRef):
            if node.join_alias or node.source_field is not None:
                raise _unsupported("joins")
            path = f"${node.name}"
            unit = node.temporal_unit
            if unit in (None, "default"):
                return path
            if unit in TRUNCATION_UNITS:
                spec = {"date": path, "unit": unit}
                if unit == "week":
                    spec["startOfWeek"] = "sunday"
                return {"$dateTrunc": spec}
            if unit == "quarter-of-year":
                return {"$ceil": {"$divide": [{"$month": path}, 3]}}
            return {EXTRACTIONS[unit]: path}
        if isinstance(node, Value):
            return {"$literal": node.value}
        if isinstance(node, Arithmetic):
            return {ARITHMETIC[node.op]: [self.expr(a) for a in node.args]}
        raise _unsupported(type(node).__name__, f"mongo cannot compile {type(node).__name__} expressions")

    # -------------------------------------------------------------------------
    # Filters (query language)
    # -------------------------------------------------------------------------

    def _path(self, node: Any) -> str:
        if not isinstance(node, FieldRef) or node.temporal_unit not in (None, "default"):
            raise _unsupported("filter", "mongo filters must compare a plain field with literal values")
        if node.join_alias or node.source_field is not None:
            raise _unsupported("joins")
        return node.name

    def _value(self, node: Any) -> Any:
        if not isinstance(node, Value):
            raise _unsupported("filter", "mongo filters must compare a plain field with literal values")
        return node.value

    def filter(self, node: Any) -> dict[str, Any]:
        if isinstance(node, Logical):
            return {f"${node.op}": [self.filter(c) for c in node.clauses]}
        if isinstance(node, Not):
            return {"$nor": [self.filter(node.clause)]}
        if isinstance(node, Compare):
            path = self._path(node.field)
            values = [self._value(v) for v in node.values]
            if node.op == "=":
                return {path: values[0]} if len(values) == 1 else {path: {"$in": values}}
            if node.op == "!=":
                return {path: {"$ne": values[0]}} if len(values) == 1 else {path: {"$nin": values}}
            return {path: {COMPARISONS[node.op]: values[0]}}
        if isinstance(node, Between):
            path = self._path(node.field)
            return {path: {"$gte": self._value(node.min), "$lte": self._value(node.max)}}
        if isinstance(node, NullCheck):
            path = self._path(node.field)
            if node.op == "is-null":
                return {path: None}
            if node.op == "not-null":
                return {path: {"$ne": None}}
            if node.op == "is-empty":
                return {"$or": [{path: None}, {path: ""}]}
            return {"$and": [{path: {"$ne": None}}, {path: {"$ne": ""}}]}
        if isinstance(node, StringFilter):
            path = self._path(node.field)
            value = self._value(node.value)
            if not isinstance(value, str):
                raise _unsupported(node.op, f"{node.op} only supports string literal values")
            pattern = re.escape(value)
            if node.op == "starts-with":
                pattern = "^" + pattern
            elif node.op == "ends-with":
                pattern = pattern + "$"
            regex: dict[str, Any] = {"$regex": pattern}
            if not node.case_sensitive:
                regex["$options"] = "i"
            if node.op == "does-not-contain":
                return {path: {"$not": regex}}
            return {path: regex}
        raise _unsupported(type(node).__name__, f"mongo does not support {type(node).__name__} filters")

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _accumulator(self, agg: Aggregation) -> tuple[dict[str, Any], Any]:
        """($group accumulator, $project expression) for one aggregation."""
        if agg.op == "count":
            if agg.arg is None:
                return {"$sum": 1}, True
            arg = self.expr(agg.arg)
            return {"$sum": {"$cond": [{"$ne": [arg, None]}, 1, 0]}}, True
        if agg.op == "distinct":
            return {"$addToSet": self.expr(agg.arg)}, "size"
        if agg.op in ACCUMULATORS:
            return {ACCUMULATORS[agg.op]: self.expr(agg.arg)}, True
        raise _unsupported(agg.op)

    def _group(self) -> list[dict[str, Any]]:
        group_id: dict[str, Any] = {}
        project: dict[str, Any] = {"_id": False}
        for ref in self.inner.breakout:
            name = self._unique(ref.name if isinstance(ref, FieldRef) else "expression")
            self.output_names[ref] = name
            group_id[name] = self.expr(ref)
            project[name] = f"$_id.{name}"
        group: dict[str, Any] = {"_id": group_id or None}
        for agg in self.inner.aggregation:
            name = self._unique(agg.name or ("count" if agg.op == "distinct" else agg.op))
            self.aggregation_names.append(name)
            accumulator, projection = self._accumulator(agg)
            group[name] = accumulator
            project[name] = {"$size": f"${name}"} if projection == "size" else True
        return [{"$group": group}, {"$project": project}]

    def _fields(self) -> list[dict[str, Any]]:
        project: dict[str, Any] = {"_id": False}
        for ref in self.inner.fields:
            name = self._unique(ref.name if isinstance(ref, FieldRef) else "expression")
            self.output_names[ref] = name
            project[name] = self.expr(ref)
        return [{"$project": project}]

    def _sort(self) -> dict[str, Any]:
        sort = {}
        for order in self.inner.order_by:
            if isinstance(order.ref, AggregationRef):
                if not 0 <= order.ref.index < len(self.aggregation_names):
                    raise InvalidQuery(f"No aggregation at index {order.ref.index}", clause="order-by")
                name = self.aggregation_names[order.ref.index]
            elif order.ref in self.output_names:
                name = self.output_names[order.ref]
            elif self.inner.breakout or self.inner.aggregation:
                raise InvalidQuery("order-by must reference a breakout or aggregation", clause="order-by")
            else:
                name = self._path(order.ref)
            sort[name] = -1 if order.direction is SortDirection.DESC else 1
        return {"$sort": sort}

    def compile(self) -> tuple[str, list[dict[str, Any]]]:
        inner = self.inner
        if inner.source_query is not None:
            raise _unsupported("nested-queries")
        if inner.joins:
            raise _unsupported("joins")
        if inner.expressions:
            raise _unsupported("expressions")
        if inner.table is None:
            raise InvalidQuery("Query must be resolved against metadata before it is compiled", clause="source-table")

        pipeline: list[dict[str, Any]] = []
        if inner.filter is not None:
            pipeline.append({"$match": self.filter(inner.filter)})
        if inner.breakout or inner.aggregation:
            pipeline.extend(self._group())
        elif inner.fields:
            pipeline.extend(self._fields())
        if inner.order_by:
            pipeline.append(self._sort())
        limit = inner.limit
        if inner.page is not None:
            if inner.page.offset:
                pipeline.append({"$skip": inner.page.offset})
            limit = inner.page.items if limit is None else min(limit, inner.page.items)
        if limit is not None:
            pipeline.append({"$limit": limit})
        return inner.table.name, pipeline


@mbql_to_native.register("mongo")
def _(driver: str, query: Query) -> NativeQuery:
    if query.type is not QueryType.QUERY:
        raise InvalidQuery("Only structured queries can be compiled", clause="type")
    compiler = PipelineCompiler(query.query)
    collection, pipeline = compiler.compile()
    logger.debug(f"Compiled pipeline for {collection}: {pipeline}")
    return NativeQuery(query=pipeline, collection=collection, columns=tuple(compiler.columns))


# =============================================================================
# Native Parameters
# =============================================================================


@substitute_native_parameters.register("mongo")
def _(driver: str, native: NativeQuery, parameters: tuple[Parameter, ...]) -> NativeQuery:
    def render_tag(tag: TemplateTag, value: Any) -> str:
        if tag.type != "dimension":
            return json.dumps(value, default=str)
        if value is NO_VALUE:
            return "{}"
        values = value if isinstance(value, list) else [value]
        condition = Compare("=", tag.dimension, tuple(Value(v) for v in values))
        return json.dumps(PipelineCompiler(InnerQuery()).filter(condition), default=str)

    text = native.query if isinstance(native.query, str) else json.dumps(native.query)
    rendered = render(dataclasses.replace(native, query=text), parameters, render_tag)
    return dataclasses.replace(native, query=_load_pipeline(rendered), template_tags=())


def _load_pipeline(query: Any) -> list[dict[str, Any]]:
    if not isinstance(query, str):
        return query
    try:
        pipeline = json.loads(query)
    except json.JSONDecodeError as e:
        raise InvalidQuery(f"Native MongoDB query is not valid JSON: {e}", clause="native") from e
    if isinstance(pipeline, dict):
        pipeline = [pipeline]
    if not isinstance(pipeline, list):
        raise InvalidQuery("Native MongoDB query must be a JSON array of pipeline stages", clause="native")
    return pipeline


# =============================================================================
# Execution
# =============================================================================


def _wrap(driver: str, error: Exception) -> DriverExecutionError:
    wrapped = DriverExecutionError(
        humanize_error(driver, str(error).strip() or type(error).__name__),
        driver=driver,
        code=getattr(error, "code", None),
    )
    wrapped.__cause__ = error
    return wrapped


def _columns(native: NativeQuery, first: dict[str, Any] | None) -> list[str]:
    if native.columns:
        return list(native.columns)
    return list(first.keys()) if first else []


@execute_reducible_query.register("mongo")
def _(driver: str, native: NativeQuery, context: Any, rff: Any, connection: MongoConnection) -> Any:
    if not native.collection:
        raise InvalidQuery("Native MongoDB queries need a collection", clause="native")
    pipeline = _load_pipeline(native.query)
    options: dict[str, Any] = {"batchSize": context.fetch_size}
    if context.timeout_seconds:
        options["maxTimeMS"] = int(context.timeout_seconds * 1000)
    logger.debug(f"Running pipeline on {native.collection}: {pipeline}")

    cursor = None
    hook = lambda: cancel_query(driver, connection, cursor)  # noqa: E731
    context.add_cancel_hook(hook)
    try:
        context.check_cancelled()
        try:
            cursor = connection.database[native.collection].aggregate(pipeline, **options)
            first = next(cursor, None)
        except QuarryError:
            raise
        except Exception as e:
            if context.is_cancelled:
                raise context.cancellation_error() from e
            context.raisef(_wrap(driver, e))

        names = _columns(native, first)
        sample = first or {}
        metadata = []
        for name in names:
            value = sample.get(name)
            base_type = base_type_for_value(value) if value is not None else "type/*"
            metadata.append(
                {
                    "name": name,
                    "display_name": name,
                    "base_type": base_type,
                    "database_type": type(value).__name__ if value is not None else None,
                    "source": "native",
                    "field_ref": ["field", name, {"base-type": base_type}],
                }
            )
        context.metadata = metadata
        reducer = rff(metadata)

        document = first
        try:
            while document is not None:
                if context.max_rows is not None and context.row_count >= context.max_rows:
                    break
                reducer.step(tuple(document.get(name) for name in names))
                context.row_count += 1
                if context.row_count % context.fetch_size == 0:
                    context.check_cancelled()
                document = next(cursor, None)
        except QuarryError:
            raise
        except Exception as e:
            if context.is_cancelled:
                raise context.cancellation_error() from e
            context.raisef(_wrap(driver, e))
        return reducer.finish()
    finally:
        context.remove_cancel_hook(hook)
        if cursor is not None:
            cursor.close()


@cancel_query.register("mongo")
def _(driver: str, connection: MongoConnection, cursor: Any) -> None:
    if cursor is not None:
        cursor.close()


# =============================================================================
# Sync
# =============================================================================


@describe_database.register("mongo")
def _(driver: str, connection: MongoConnection, details: dict[str, Any]) -> list[dict[str, Any]]:
    names = sorted(n for n in connection.database.list_collection_names() if not n.startswith("system."))
    return [{"schema": None, "name": name} for name in names]


@describe_table.register("mongo")
def _(driver: str, connection: MongoConnection, table: TableMetadata) -> list[dict[str, Any]]:
    fields: dict[str, Any] = {}
    for document in connection.database[table.name].find().limit(SAMPLE_SIZE):
        for name, value in document.items():
            if value is not None and fields.get(name) is None:
                fields[name] = value
            fields.setdefault(name, None)
    return [
        {
            "name": name,
            "database_type": type(value).__name__ if value is not None else None,
            "base_type": base_type_for_value(value) if value is not None else "type/*",
        }
        for name, value in fields.items()
    ]
