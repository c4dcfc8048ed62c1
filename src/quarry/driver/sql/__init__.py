"""The abstract `sql` driver: shared compilation for SQL databases.

Concrete SQL drivers derive from `sql-dbapi` (which derives from `sql`) and
override the dialect capabilities: quoting, placeholders, date bucketing,
interval arithmetic and the occasional top-level clause.
"""

from __future__ import annotations

from typing import Any

from quarry.driver import register
from quarry.driver.base import supports
from quarry.driver.sql.capabilities import (
    add_interval,
    apply_top_level_clause,
    boolean_value,
    cast_temporal_string,
    current_datetime,
    date_bucket,
    optimized_temporal_buckets,
    param_placeholder,
    quote_identifier,
    to_sql,
    unix_timestamp,
)
from quarry.driver.sql.hsql import Cast, Extract, Raw

register("sql", abstract=True)


@quote_identifier.register("sql")
def _(driver: str, name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


@param_placeholder.register("sql")
def _(driver: str, index: int) -> str:
    return "?"


@boolean_value.register("sql")
def _(driver: str, value: bool) -> str:
    return "TRUE" if value else "FALSE"


@current_datetime.register("sql")
def _(driver: str) -> Any:
    return Raw("CURRENT_TIMESTAMP")


SQL_FEATURES = (
    "basic-aggregations",
    "standard-deviation-aggregations",
    "expressions",
    "native-parameters",
    "nested-queries",
    "left-join",
    "right-join",
    "inner-join",
    "full-join",
    "foreign-keys",
    "case-sensitivity-string-filter-options",
    "offset",
)

for _feature in SQL_FEATURES:
    supports.register("sql", key=_feature)(lambda driver, feature, database=None: True)


@cast_temporal_string.register("sql", key="Coercion/ISO8601->Date")
def _(driver: str, strategy: str, expr: Any) -> Any:
    return Cast(expr, "DATE")


@cast_temporal_string.register("sql", key="Coercion/ISO8601->DateTime")
def _(driver: str, strategy: str, expr: Any) -> Any:
    return Cast(expr, "TIMESTAMP")


@cast_temporal_string.register("sql", key="Coercion/ISO8601->Time")
def _(driver: str, strategy: str, expr: Any) -> Any:
    return Cast(expr, "TIME")


@date_bucket.register("sql", key="default")
def _(driver: str, unit: str, expr: Any) -> Any:
    return expr


# Extraction units are plain EXTRACT() in ANSI SQL; drivers override the rest
for _unit, _part in {
    "minute-of-hour": "MINUTE",
    "hour-of-day": "HOUR",
    "day-of-month": "DAY",
    "month-of-year": "MONTH",
    "quarter-of-year": "QUARTER",
}.items():

    def _extract(driver: str, unit: str, expr: Any, _part: str = _part) -> Any:
        return Extract(_part, expr)

    date_bucket.register("sql", key=_unit)(_extract)


from quarry.driver.sql import compiler, parameters  # noqa: E402

__all__ = [
    "add_interval",
    "apply_top_level_clause",
    "boolean_value",
    "cast_temporal_string",
    "compiler",
    "current_datetime",
    "date_bucket",
    "optimized_temporal_buckets",
    "param_placeholder",
    "parameters",
    "quote_identifier",
    "to_sql",
    "unix_timestamp",
]
