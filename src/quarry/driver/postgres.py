"""PostgreSQL driver, on psycopg2 (install with `pip install quarry[postgres]`)."""

from __future__ import annotations

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
from quarry.driver.sql.capabilities import add_interval, date_bucket, param_placeholder, unix_timestamp
from quarry.driver.sql.hsql import BinaryOp, Call, Cast, Extract, Literal, Raw
from quarry.driver.sql_dbapi import pattern_based_base_type
from quarry.errors import ConfigError

logger = logging.getLogger(__name__)

register("postgres", parents=["sql-dbapi"])

DATABASE_TYPES = [
    (r"^bool", "type/Boolean"),
    (r"^(bigint|int8|bigserial)$", "type/BigInteger"),
    (r"^(smallint|integer|int2|int4|serial|smallserial)$", "type/Integer"),
    (r"^(numeric|decimal|money)", "type/Decimal"),
    (r"^(real|double precision|float4|float8)$", "type/Float"),
    (r"^uuid$", "type/UUID"),
    (r"^(text|varchar|character|char|bpchar|name|citext)", "type/Text"),
    (r"^timestamp(\(\d\))? with time zone$|^timestamptz$", "type/DateTimeWithLocalTZ"),
    (r"^timestamp", "type/DateTime"),
    (r"^date$", "type/Date"),
    (r"^time", "type/Time"),
    (r"^json", "type/SerializedJSON"),
    (r"^bytea$", "type/Binary"),
    (r"^(array|_)", "type/Array"),
]

# psycopg2 reports type OIDs in cursor.description
TYPE_OIDS = {
    16: "bool",
    20: "int8",
    21: "int2",
    23: "int4",
    25: "text",
    700: "float4",
    701: "float8",
    1043: "varchar",
    1082: "date",
    1083: "time",
    1114: "timestamp",
    1184: "timestamptz",
    1700: "numeric",
    2950: "uuid",
    114: "json",
    3802: "jsonb",
}


@connection_spec.register("postgres")
def _(driver: str, details: dict[str, Any]) -> dict[str, Any]:
    spec = {
        "host": details.get("host", "localhost"),
        "port": int(details.get("port", 5432)),
        "dbname": details.get("dbname") or details.get("db"),
        "user": details.get("user"),
        "password": details.get("password"),
    }
    if details.get("ssl"):
        spec["sslmode"] = "require"
    return {k: v for k, v in spec.items() if v is not None}


@connect.register("postgres")
def _(driver: str, details: dict[str, Any]) -> Any:
    try:
        import psycopg2
    except ImportError as e:
        raise ConfigError(
            "The postgres driver needs psycopg2. Install it with: pip install 'quarry[postgres]'",
            driver=driver,
        ) from e
    return psycopg2.connect(**connection_spec(driver, details))


@database_type_to_base_type.register("postgres")
def _(driver: str, database_type: str | None) -> str:
    if database_type and database_type.isdigit():
        database_type = TYPE_OIDS.get(int(database_type), database_type)
    return pattern_based_base_type(DATABASE_TYPES, database_type)


@param_placeholder.register("postgres")
def _(driver: str, index: int) -> str:
    return "%s"


@set_isolation_level.register("postgres")
def _(driver: str, connection: Any) -> None:
    connection.set_session(isolation_level="READ UNCOMMITTED", readonly=True, autocommit=True)


@cancel_query.register("postgres")
def _(driver: str, connection: Any, cursor: Any) -> None:
    connection.cancel()


for _unit in ("minute", "hour", "day", "month", "quarter", "year"):
    date_bucket.register("postgres", key=_unit)(lambda driver, unit, expr: Call("date_trunc", (Literal(unit), expr)))


@date_bucket.register("postgres", key="week")
def _(driver: str, unit: str, expr: Any) -> Any:
    # date_trunc('week') starts on Monday; shift so weeks start on Sunday
    shifted = BinaryOp("+", Cast(expr, "timestamp"), Raw("INTERVAL '1 day'"))
    return BinaryOp("-", Call("date_trunc", (Literal("week"), shifted)), Raw("INTERVAL '1 day'"))


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
    date_bucket.register("postgres", key=_unit)(
        lambda driver, unit, expr, _part=_part: Cast(Extract(_part, expr), "integer")
    )


@date_bucket.register("postgres", key="day-of-week")
def _(driver: str, unit: str, expr: Any) -> Any:
    return BinaryOp("+", Cast(Extract("dow", expr), "integer"), Literal(1))


@add_interval.register("postgres")
def _(driver: str, expr: Any, amount: int, unit: str) -> Any:
    if unit == "quarter":
        amount, unit = amount * 3, "month"
    return BinaryOp("+", Cast(expr, "timestamp"), Raw(f"INTERVAL '{int(amount)} {unit}'"))


@unix_timestamp.register("postgres", key="seconds")
@unix_timestamp.register("postgres", key="milliseconds")
@unix_timestamp.register("postgres", key="microseconds")
def _(driver: str, precision: str, expr: Any) -> Any:
    divisor = {"seconds": 1, "milliseconds": 1000, "microseconds": 1000000}[precision]
    return Call("to_timestamp", (expr if divisor == 1 else BinaryOp("/", expr, Literal(divisor)),))
