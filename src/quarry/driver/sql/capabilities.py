"""SQL-level capabilities, implemented by `sql` and overridden by SQL drivers."""

from __future__ import annotations

from typing import Any

from quarry.driver.dispatch import Capability


def _node_type(node: Any, *args: Any, **kwargs: Any) -> type:
    return type(node)


def _first(value: Any, *args: Any, **kwargs: Any) -> Any:
    return value


# quote_identifier(driver, name) -> quoted identifier component
quote_identifier = Capability("quote_identifier")

# param_placeholder(driver, index) -> placeholder for the index-th (1-based) bound parameter
param_placeholder = Capability("param_placeholder")

# to_sql(driver, node, ctx) -> hsql expression; keyed by AST node class
to_sql = Capability("to_sql", key=_node_type)

# date_bucket(driver, unit, expr) -> hsql expression truncating or extracting `unit`
date_bucket = Capability("date_bucket", key=_first)

# apply_top_level_clause(driver, clause, ctx, select) -> Select; keyed by clause name
apply_top_level_clause = Capability("apply_top_level_clause", key=_first)

# boolean_value(driver, value) -> SQL literal for True/False
boolean_value = Capability("boolean_value")

# current_datetime(driver) -> hsql expression for "now" without a time zone
current_datetime = Capability("current_datetime")

# add_interval(driver, expr, amount, unit) -> hsql expression
add_interval = Capability("add_interval")

# cast_temporal_string(driver, coercion_strategy, expr) -> hsql expression
cast_temporal_string = Capability("cast_temporal_string", key=_first)

# unix_timestamp(driver, precision, expr) -> hsql expression; precision is "seconds", "milliseconds", "microseconds"
unix_timestamp = Capability("unix_timestamp", key=_first)

# optimized_temporal_buckets(driver, unit, expr) -> tuple of group-by expressions, or None
optimized_temporal_buckets = Capability(
    "optimized_temporal_buckets",
    default=lambda driver, unit, expr: None,
)

