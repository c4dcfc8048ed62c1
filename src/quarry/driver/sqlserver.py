"""Microsoft SQL Server driver, on pyodbc (install with `pip install quarry[sqlserver]`).

Limits use `SELECT TOP n`; pages use `OFFSET m ROWS FETCH NEXT n ROWS ONLY`,
which requires an ORDER BY, so unordered pages order by `(SELECT NULL)`.

Year, month and day buckets group by `YEAR()`, `MONTH()` and `DAY()`, which
can use indexes, while the SELECT list still shows `DateFromParts(...)`.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from quarry.driver import register
from quarry.driver.base import (
    cancel_query,
    connect,
    connection_spec,
    database_type_to_base_type,
    set_isolation_level,
)
from quarry.driver.sql.capabilities import (
    add_interval,
    apply_top_level_clause,
    boolean_value,
    current_datetime,
    date_bucket,
    optimized_temporal_buckets,
    quote_identifier,
    to_sql,
)
from quarry.driver.sql.hsql import BinaryOp, Call, Cast, Literal, OrderItem, Raw, Select
from quarry.errors import ConfigError
from quarry.query.ast import Aggregation

logger = logging.getLogger(__name__)

register("sqlserver", parents=["sql-dbapi"])

DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"

DATABASE_TYPES = {
    "bigint": "type/BigInteger",
    "bit": "type/Boolean",
    "char": "type/Text",
    "date": "type/Date",
    "datetime": "type/DateTime",
    "datetime2": "type/DateTime",
    "datetimeoffset": "type/DateTimeWithTZ",
    "decimal": "type/Decimal",
    "float": "type/Float",
    "int": "type/Integer",
    "money": "type/Decimal",
    "nchar": "type/Text",
    "ntext": "type/Text",
    "numeric": "type/Decimal",
    "nvarchar": "type/Text",
    "real": "type/Float",
    "smalldatetime": "type/DateTime",
    "smallint": "type/Integer",
    "smallmoney": "type/Decimal",
    "text": "type/Text",
    "time": "type/Time",
    "tinyint": "type/Integer",
    "uniqueidentifier": "type/UUID",
    "varbinary": "type/Binary",
    "varchar": "type/Text",
    "xml": "type/Text",
    # pyodbc reports Python types in cursor.description
    "bool": "type/Boolean",
    "str": "type/Text",
    "Decimal": "type/Decimal",
    "bytes": "type/Binary",
    "bytearray": "type/Binary",
}


@connection_spec.register("sqlserver")
def _(driver: str, details: dict[str, Any]) -> dict[str, Any]:
    parts = {
        "DRIVER": "{" + details.get("odbc_driver", DEFAULT_ODBC_DRIVER) + "}",
        "SERVER": f"{details.get('host', 'localhost')},{int(details.get('port', 1433))}",
        "DATABASE": details.get("db") or details.get("database"),
        "UID": details.get("user"),
        "PWD": details.get("password"),
        "Encrypt": "yes" if details.get("ssl") else None,
        "TrustServerCertificate": "yes" if details.get("trust_server_certificate") else None,
    }
    connection_string = ";".join(f"{k}={v}" for k, v in parts.items() if v is not None)
    return {"connection_string": connection_string, "autocommit": True}


@connect.register("sqlserver")
def _(driver: str, details: dict[str, Any]) -> Any:
    try:
        import pyodbc
    except ImportError as e:
        raise ConfigError(
            "The sqlserver driver needs pyodbc. Install it with: pip install 'quarry[sqlserver]'",
            driver=driver,
        ) from e
    spec = connection_spec(driver, details)
    return pyodbc.connect(spec["connection_string"], autocommit=spec["autocommit"])


@database_type_to_base_type.register("sqlserver")
def _(driver: str, database_type: str | None) -> str:
    return DATABASE_TYPES.get(database_type or "", DATABASE_TYPES.get((database_type or "").lower(), "type/*"))


@set_isolation_level.register("sqlserver")
def _(driver: str, connection: Any) -> None:
    connection.execute("SET TRANSACTION ISOLATION LEVEL READ UNCOMMITTED")


@cancel_query.register("sqlserver")
def _(driver: str, connection: Any, cursor: Any) -> None:
    cursor.cancel()


@quote_identifier.register("sqlserver")
def _(driver: str, name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


@boolean_value.register("sqlserver")
def _(driver: str, value: bool) -> str:
    return "1" if value else "0"


@current_datetime.register("sqlserver")
def _(driver: str) -> Any:
    return Raw("GETDATE()")


@to_sql.register("sqlserver", key=Aggregation)
def _(driver: str, agg: Aggregation, ctx: Any) -> Any:
    if agg.op == "stddev":
        return Call("STDEVP", (ctx.compile(agg.arg),))
    return to_sql.get_method("sql", Aggregation)(driver, agg, ctx)


# =============================================================================
# Pagination
# =============================================================================


@apply_top_level_clause.register("sqlserver", key="limit")
def _(driver: str, clause: str, ctx: Any, select: Select) -> Select:
    limit = ctx.inner.limit
    if select.fetch is not None:
        offset, items = select.fetch
        return dataclasses.replace(select, fetch=(offset, min(items, limit)))
    if select.top is not None:
        limit = min(limit, select.top)
    return dataclasses.replace(select, top=limit)


@apply_top_level_clause.register("sqlserver", key="page")
def _(driver: str, clause: str, ctx: Any, select: Select) -> Select:
    page = ctx.inner.page
    order_by = select.order_by or (OrderItem(Raw("(SELECT NULL)")),)
    return dataclasses.replace(select, order_by=order_by, fetch=(page.offset, page.items))


# =============================================================================
# Dates
# =============================================================================


def _part(name: str, expr: Any) -> Call:
    return Call(name, (expr,))


def date_from_parts(year: Any, month: Any, day: Any) -> Call:
    return Call("DateFromParts", (year, month, day))


def datepart(part: str, expr: Any) -> Call:
    return Call("DATEPART", (Raw(part), expr))


def _truncate_with_dateadd(part: str, expr: Any) -> Call:
    # DATEADD(part, DATEDIFF(part, 0, x), 0) zeroes everything below `part`
    return Call("DATEADD", (Raw(part), Call("DATEDIFF", (Raw(part), Literal(0), expr)), Literal(0)))


@date_bucket.register("sqlserver", key="day")
def _(driver: str, unit: str, expr: Any) -> Any:
    return date_from_parts(_part("YEAR", expr), _part("MONTH", expr), _part("DAY", expr))


@date_bucket.register("sqlserver", key="month")
def _(driver: str, unit: str, expr: Any) -> Any:
    return date_from_parts(_part("YEAR", expr), _part("MONTH", expr), Literal(1))


@date_bucket.register("sqlserver", key="year")
def _(driver: str, unit: str, expr: Any) -> Any:
    return date_from_parts(_part("YEAR", expr), Literal(1), Literal(1))


for _unit in ("minute", "hour", "quarter"):
    date_bucket.register("sqlserver", key=_unit)(lambda driver, unit, expr: _truncate_with_dateadd(unit, expr))


@date_bucket.register("sqlserver", key="week")
def _(driver: str, unit: str, expr: Any) -> Any:
    # Back to the preceding Sunday (DATEPART(weekday) is 1 for Sunday with the default DATEFIRST)
    days_back = BinaryOp("-", Literal(1), datepart("weekday", expr))
    return Call("DATEADD", (Raw("day"), days_back, Cast(expr, "DATE")))


EXTRACTIONS = {
    "minute-of-hour": "minute",
    "hour-of-day": "hour",
    "day-of-week": "weekday",
    "day-of-month": "day",
    "day-of-year": "dayofyear",
    "week-of-year": "iso_week",
    "month-of-year": "month",
    "quarter-of-year": "quarter",
}

for _unit, _datepart in EXTRACTIONS.items():
    date_bucket.register("sqlserver", key=_unit)(
        lambda driver, unit, expr, _datepart=_datepart: datepart(_datepart, expr)
    )


OPTIMIZED_PARTS = {
    "year": ("YEAR",),
    "month": ("YEAR", "MONTH"),
    "day": ("YEAR", "MONTH", "DAY"),
}


@optimized_temporal_buckets.register("sqlserver")
def _(driver: str, unit: str, expr: Any) -> tuple[Any, ...] | None:
    parts = OPTIMIZED_PARTS.get(unit)
    if parts is None:
        return None
    return tuple(_part(p, expr) for p in parts)


@add_interval.register("sqlserver")
def _(driver: str, expr: Any, amount: int, unit: str) -> Any:
    return Call("DATEADD", (Raw(unit), Literal(int(amount)), expr))
