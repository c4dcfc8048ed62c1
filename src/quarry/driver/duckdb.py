"""DuckDB driver."""

from __future__ import annotations

import logging
from typing import Any

import duckdb

from quarry.driver import register
from quarry.driver.base import (
    cancel_query,
    connect,
    connection_spec,
    database_type_to_base_type,
    db_start_of_week,
)
from quarry.driver.sql.capabilities import add_interval, cast_temporal_string, date_bucket, unix_timestamp
from quarry.driver.sql.hsql import BinaryOp, Call, Cast, Extract, Literal, Raw
from quarry.driver.sql_dbapi import pattern_based_base_type

logger = logging.getLogger(__name__)

register("duckdb", parents=["sql-dbapi"])

DATABASE_TYPES = [
    (r"^BOOL", "type/Boolean"),
    (r"^(HUGEINT|UBIGINT|BIGINT|INT8|LONG)", "type/BigInteger"),
    (r"INT", "type/Integer"),
    (r"^(DECIMAL|NUMERIC)", "type/Decimal"),
    (r"^(DOUBLE|FLOAT|REAL)", "type/Float"),
    (r"^(VARCHAR|TEXT|STRING|CHAR|BPCHAR)", "type/Text"),
    (r"^UUID", "type/UUID"),
    (r"^TIMESTAMP WITH TIME ZONE|^TIMESTAMPTZ", "type/DateTimeWithTZ"),
    (r"^(TIMESTAMP|DATETIME)", "type/DateTime"),
    (r"^DATE", "type/Date"),
    (r"^TIME", "type/Time"),
    (r"^(BLOB|BYTEA|VARBINARY)", "type/Binary"),
    (r"^(STRUCT|MAP)", "type/Dictionary"),
    (r"\[\]$|^LIST", "type/Array"),
    (r"^JSON", "type/SerializedJSON"),
]


@connection_spec.register("duckdb")
def _(driver: str, details: dict[str, Any]) -> dict[str, Any]:
    spec: dict[str, Any] = {"database": str(details.get("db") or details.get("database") or ":memory:")}
    if details.get("read_only"):
        spec["read_only"] = True
    return spec


@connect.register("duckdb")
def _(driver: str, details: dict[str, Any]) -> Any:
    return duckdb.connect(**connection_spec(driver, details))


@database_type_to_base_type.register("duckdb")
def _(driver: str, database_type: str | None) -> str:
    return pattern_based_base_type(DATABASE_TYPES, database_type)


@cancel_query.register("duckdb")
def _(driver: str, connection: Any, cursor: Any) -> None:
    # DuckDB cursors are connections of their own
    cursor.interrupt()


@db_start_of_week.register("duckdb")
def _(driver: str) -> str:
    return "monday"


def date_trunc(unit: str, expr: Any) -> Call:
    return Call("date_trunc", (Literal(unit), expr))


for _unit in ("minute", "hour", "day", "month", "quarter", "year"):
    date_bucket.register("duckdb", key=_unit)(lambda driver, unit, expr: date_trunc(unit, expr))


@date_bucket.register("duckdb", key="week")
def _(driver: str, unit: str, expr: Any) -> Any:
    # date_trunc('week') starts on Monday; shift so weeks start on Sunday
    shifted = BinaryOp("+", Cast(expr, "TIMESTAMP"), Raw("INTERVAL 1 DAY"))
    return BinaryOp("-", date_trunc("week", shifted), Raw("INTERVAL 1 DAY"))


EXTRACTIONS = {
    "minute-of-hour": "minute",
    "hour-of-day": "hour",
    "day-of-month": "day",
    "day-of-year": "doy",
    "week-of-year": "week",
    "month-of-year": "month",
    "quarter-of-year": "quarter",
}

for _unit, _part in EXTRACTIONS.items():
    date_bucket.register("duckdb", key=_unit)(lambda driver, unit, expr, _part=_part: Extract(_part, expr))


@date_bucket.register("duckdb", key="day-of-week")
def _(driver: str, unit: str, expr: Any) -> Any:
    # dayofweek() is 0 for Sunday
    return BinaryOp("+", Call("dayofweek", (expr,)), Literal(1))


INTERVAL_UNITS = {"minute": "MINUTE", "hour": "HOUR", "day": "DAY", "week": "WEEK", "month": "MONTH", "year": "YEAR"}


@add_interval.register("duckdb")
def _(driver: str, expr: Any, amount: int, unit: str) -> Any:
    if unit == "quarter":
        amount, unit = amount * 3, "month"
    return BinaryOp("+", Cast(expr, "TIMESTAMP"), Raw(f"INTERVAL ({int(amount)}) {INTERVAL_UNITS[unit]}"))


@cast_temporal_string.register("duckdb", key="Coercion/YYYYMMDDHHMMSSString->Temporal")
def _(driver: str, strategy: str, expr: Any) -> Any:
    return Call("strptime", (expr, Literal("%Y%m%d%H%M%S")))


@unix_timestamp.register("duckdb", key="seconds")
def _(driver: str, precision: str, expr: Any) -> Any:
    return Call("to_timestamp", (expr,))


@unix_timestamp.register("duckdb", key="milliseconds")
def _(driver: str, precision: str, expr: Any) -> Any:
    return Call("epoch_ms", (expr,))


@unix_timestamp.register("duckdb", key="microseconds")
def _(driver: str, precision: str, expr: Any) -> Any:
    return Call("make_timestamp", (expr,))
