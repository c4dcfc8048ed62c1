"""SQLite driver, on the standard library `sqlite3` module.

Dates are stored as ISO-8601 text, so bucketing uses `strftime()`/`date()`
and returns text in the same format.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from quarry.driver import register
from quarry.driver.base import (
    cancel_query,
    connect,
    connection_spec,
    database_type_to_base_type,
    describe_database,
    describe_table,
    execute_reducible_query,
    set_isolation_level,
    supports,
)
from quarry.driver.sql.capabilities import (
    add_interval,
    boolean_value,
    cast_temporal_string,
    date_bucket,
    quote_identifier,
    unix_timestamp,
)
from quarry.driver.sql.hsql import BinaryOp, Call, Cast, Literal
from quarry.driver.sql_dbapi import fetch_all, pattern_based_base_type
from quarry.errors import ConfigError
from quarry.metadata import TableMetadata

logger = logging.getLogger(__name__)

register("sqlite", parents=["sql-dbapi"])

# Checked against SQLite's column affinity rules, most specific first
DATABASE_TYPES = [
    (r"DATETIME|TIMESTAMP", "type/DateTime"),
    (r"DATE", "type/Date"),
    (r"TIME", "type/Time"),
    (r"BOOL", "type/Boolean"),
    (r"BIGINT", "type/BigInteger"),
    (r"INT", "type/Integer"),
    (r"CHAR|CLOB|TEXT", "type/Text"),
    (r"REAL|FLOA|DOUB", "type/Float"),
    (r"NUMERIC|DECIMAL", "type/Decimal"),
    (r"BLOB", "type/Binary"),
]

# Progress handler granularity, in SQLite VM instructions
PROGRESS_INSTRUCTIONS = 1000

for _feature in ("right-join", "full-join", "standard-deviation-aggregations"):
    supports.register("sqlite", key=_feature)(lambda driver, feature, database=None: False)


@connection_spec.register("sqlite")
def _(driver: str, details: dict[str, Any]) -> dict[str, Any]:
    database = details.get("db") or details.get("database")
    if not database:
        raise ConfigError("SQLite connection details need a `db` path", driver=driver)
    return {"database": str(database), "check_same_thread": False}


@connect.register("sqlite")
def _(driver: str, details: dict[str, Any]) -> sqlite3.Connection:
    return sqlite3.connect(**connection_spec(driver, details))


@database_type_to_base_type.register("sqlite")
def _(driver: str, database_type: str | None) -> str:
    return pattern_based_base_type(DATABASE_TYPES, database_type)


@set_isolation_level.register("sqlite")
def _(driver: str, connection: sqlite3.Connection) -> None:
    connection.execute("PRAGMA read_uncommitted = 1")


@execute_reducible_query.register("sqlite")
def _(driver: str, native: Any, context: Any, rff: Any, connection: sqlite3.Connection) -> Any:
    # interrupt() is lost if it arrives before the statement starts; the handler is not
    connection.set_progress_handler(lambda: 1 if context.is_cancelled else 0, PROGRESS_INSTRUCTIONS)
    try:
        return execute_reducible_query.get_method("sql-dbapi")(driver, native, context, rff, connection)
    finally:
        connection.set_progress_handler(None, PROGRESS_INSTRUCTIONS)


@cancel_query.register("sqlite")
def _(driver: str, connection: sqlite3.Connection, cursor: Any) -> None:
    connection.interrupt()


@boolean_value.register("sqlite")
def _(driver: str, value: bool) -> str:
    return "1" if value else "0"


# =============================================================================
# Sync
# =============================================================================


@describe_database.register("sqlite")
def _(driver: str, connection: sqlite3.Connection, details: dict[str, Any]) -> list[dict[str, Any]]:
    rows = fetch_all(
        driver,
        connection,
        "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%' ORDER BY name",
    )
    return [{"schema": None, "name": name} for (name,) in rows]


@describe_table.register("sqlite")
def _(driver: str, connection: sqlite3.Connection, table: TableMetadata) -> list[dict[str, Any]]:
    rows = fetch_all(driver, connection, f"PRAGMA table_info({quote_identifier(driver, table.name)})")
    # cid, name, type, notnull, dflt_value, pk
    return [
        {"name": row[1], "database_type": row[2], "base_type": database_type_to_base_type(driver, row[2])}
        for row in rows
    ]


# =============================================================================
# Dates
# =============================================================================


def strftime(fmt: str, expr: Any) -> Call:
    return Call("strftime", (Literal(fmt), expr))


def _concat(*args: Any) -> Any:
    result = args[0]
    for arg in args[1:]:
        result = BinaryOp("||", result, arg)
    return result


def _integer(fmt: str, expr: Any) -> Cast:
    return Cast(strftime(fmt, expr), "INTEGER")


TRUNCATIONS = {
    "minute": "%Y-%m-%d %H:%M:00",
    "hour": "%Y-%m-%d %H:00:00",
    "day": "%Y-%m-%d",
    "month": "%Y-%m-01",
    "year": "%Y-01-01",
}

EXTRACTIONS = {
    "minute-of-hour": "%M",
    "hour-of-day": "%H",
    "day-of-month": "%d",
    "day-of-year": "%j",
    "week-of-year": "%W",
    "month-of-year": "%m",
}

for _unit, _fmt in TRUNCATIONS.items():
    date_bucket.register("sqlite", key=_unit)(lambda driver, unit, expr, _fmt=_fmt: strftime(_fmt, expr))

for _unit, _fmt in EXTRACTIONS.items():
    date_bucket.register("sqlite", key=_unit)(lambda driver, unit, expr, _fmt=_fmt: _integer(_fmt, expr))


@date_bucket.register("sqlite", key="week")
def _(driver: str, unit: str, expr: Any) -> Any:
    # Back to the preceding Sunday
    return Call("date", (expr, _concat(Literal("-"), strftime("%w", expr), Literal(" days"))))


@date_bucket.register("sqlite", key="quarter")
def _(driver: str, unit: str, expr: Any) -> Any:
    months_into_quarter = BinaryOp("%", BinaryOp("-", _integer("%m", expr), Literal(1)), Literal(3))
    offset = _concat(Literal("-"), months_into_quarter, Literal(" months"))
    return Call("date", (expr, Literal("start of month"), offset))


@date_bucket.register("sqlite", key="day-of-week")
def _(driver: str, unit: str, expr: Any) -> Any:
    # Sunday = 1
    return BinaryOp("+", _integer("%w", expr), Literal(1))


@date_bucket.register("sqlite", key="quarter-of-year")
def _(driver: str, unit: str, expr: Any) -> Any:
    return BinaryOp("/", BinaryOp("+", _integer("%m", expr), Literal(2)), Literal(3))


INTERVAL_MODIFIERS = {
    "minute": ("minutes", 1),
    "hour": ("hours", 1),
    "day": ("days", 1),
    "week": ("days", 7),
    "month": ("months", 1),
    "quarter": ("months", 3),
    "year": ("years", 1),
}


@add_interval.register("sqlite")
def _(driver: str, expr: Any, amount: int, unit: str) -> Any:
    modifier, multiplier = INTERVAL_MODIFIERS[unit]
    fn = "datetime" if unit in ("minute", "hour") else "date"
    return Call(fn, (expr, Literal(f"{amount * multiplier:+d} {modifier}")))


@cast_temporal_string.register("sqlite", key="Coercion/ISO8601->DateTime")
def _(driver: str, strategy: str, expr: Any) -> Any:
    return Call("datetime", (expr,))


@cast_temporal_string.register("sqlite", key="Coercion/ISO8601->Date")
def _(driver: str, strategy: str, expr: Any) -> Any:
    return Call("date", (expr,))


@cast_temporal_string.register("sqlite", key="Coercion/ISO8601->Time")
def _(driver: str, strategy: str, expr: Any) -> Any:
    return Call("time", (expr,))


UNIX_DIVISORS = {"seconds": 1, "milliseconds": 1000, "microseconds": 1000000}


@unix_timestamp.register("sqlite", key="seconds")
@unix_timestamp.register("sqlite", key="milliseconds")
@unix_timestamp.register("sqlite", key="microseconds")
def _(driver: str, precision: str, expr: Any) -> Any:
    divisor = UNIX_DIVISORS[precision]
    seconds = expr if divisor == 1 else BinaryOp("/", expr, Literal(divisor))
    return Call("datetime", (seconds, Literal("unixepoch")))
