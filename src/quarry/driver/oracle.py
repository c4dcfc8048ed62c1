"""Oracle driver, on python-oracledb (install with `pip install quarry[oracle]`).

Oracle before 12c has no LIMIT or OFFSET. Limits wrap the query and filter on
ROWNUM:

    SELECT * FROM (<query>) WHERE ROWNUM <= 10

Pages always use the double wrap, including the first page:

    SELECT * FROM (
        SELECT "__table__".*, ROWNUM AS "__rownum__"
        FROM (<query>) "__table__"
        WHERE ROWNUM <= offset + items
    ) WHERE "__rownum__" > offset

The synthetic `__rownum__` column is dropped from results by the execution engine.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from quarry.driver import register
from quarry.driver.base import (
    cancel_query,
    connect,
    connection_spec,
    database_type_to_base_type,
    describe_database,
    describe_table,
    escape_alias,
)
from quarry.driver.impl import truncate_alias
from quarry.driver.sql.capabilities import (
    add_interval,
    apply_top_level_clause,
    boolean_value,
    current_datetime,
    date_bucket,
    param_placeholder,
)
from quarry.driver.sql.compiler import ROWNUM_ALIAS
from quarry.driver.sql.hsql import (
    Alias,
    BinaryOp,
    Call,
    Cast,
    Extract,
    Identifier,
    Literal,
    Raw,
    Select,
    Star,
    Subquery,
)
from quarry.driver.sql_dbapi import fetch_all, pattern_based_base_type
from quarry.errors import ConfigError
from quarry.metadata import TableMetadata

logger = logging.getLogger(__name__)

register("oracle", parents=["sql-dbapi", "empty-string-is-null"])

# Maximum identifier length before Oracle 12.2
MAX_IDENTIFIER_LENGTH = 30

TABLE_ALIAS = "__table__"

DATABASE_TYPES = [
    (r"ANYDATA|ANYTYPE|ARRAY|BFILE", "type/*"),
    (r"BLOB|RAW", "type/Binary"),
    (r"TIMESTAMP(\(\d\))? WITH (LOCAL )?TIME ZONE|TIMESTAMP_L?TZ", "type/DateTimeWithTZ"),
    (r"TIMESTAMP", "type/DateTime"),
    (r"INTERVAL", "type/DateTime"),
    (r"DATE", "type/Date"),
    (r"CHAR|CLOB|LONG|URI", "type/Text"),
    (r"BINARY_DOUBLE|BINARY_FLOAT|DOUBLE|FLOAT|REAL", "type/Float"),
    (r"NUMBER", "type/Decimal"),
    (r"ROWID|^REF|STRUCT|XML|^SDO_|^ORD", "type/*"),
]


@connection_spec.register("oracle")
def _(driver: str, details: dict[str, Any]) -> dict[str, Any]:
    host = details.get("host", "localhost")
    port = int(details.get("port", 1521))
    service = details.get("service_name") or details.get("sid")
    if not service:
        raise ConfigError("Oracle connection details need a `service_name` or `sid`", driver=driver)
    return {"user": details.get("user"), "password": details.get("password"), "dsn": f"{host}:{port}/{service}"}


@connect.register("oracle")
def _(driver: str, details: dict[str, Any]) -> Any:
    try:
        import oracledb
    except ImportError as e:
        raise ConfigError(
            "The oracle driver needs python-oracledb. Install it with: pip install 'quarry[oracle]'",
            driver=driver,
        ) from e
    return oracledb.connect(**connection_spec(driver, details))


@database_type_to_base_type.register("oracle")
def _(driver: str, database_type: str | None) -> str:
    if database_type:
        # oracledb reports e.g. <DbType DB_TYPE_NUMBER>
        match = re.search(r"DB_TYPE_(\w+)", database_type)
        if match:
            database_type = match.group(1)
    return pattern_based_base_type(DATABASE_TYPES, database_type)


@cancel_query.register("oracle")
def _(driver: str, connection: Any, cursor: Any) -> None:
    connection.cancel()


@escape_alias.register("oracle")
def _(driver: str, alias: str) -> str:
    # Identifiers cannot contain double quotes or NUL
    return truncate_alias(re.sub('["\u0000]', "_", alias), MAX_IDENTIFIER_LENGTH)


@param_placeholder.register("oracle")
def _(driver: str, index: int) -> str:
    return f":{index}"


@boolean_value.register("oracle")
def _(driver: str, value: bool) -> str:
    return "1" if value else "0"


@current_datetime.register("oracle")
def _(driver: str) -> Any:
    return Raw("SYSDATE")


# =============================================================================
# Pagination
# =============================================================================


def _rownum_at_most(n: int) -> BinaryOp:
    return BinaryOp("<=", Raw("ROWNUM"), Literal(int(n)))


@apply_top_level_clause.register("oracle", key="limit")
def _(driver: str, clause: str, ctx: Any, select: Select) -> Select:
    return Select(select=(Star(),), from_=Subquery(select), where=_rownum_at_most(ctx.inner.limit))


@apply_top_level_clause.register("oracle", key="page")
def _(driver: str, clause: str, ctx: Any, select: Select) -> Select:
    page = ctx.inner.page
    numbered = Select(
        select=(Star(TABLE_ALIAS), Alias(Raw("ROWNUM"), ROWNUM_ALIAS)),
        from_=Subquery(select, TABLE_ALIAS),
        where=_rownum_at_most(page.offset + page.items),
    )
    return Select(
        select=(Star(),),
        from_=Subquery(numbered),
        where=BinaryOp(">", Identifier.of(ROWNUM_ALIAS), Literal(page.offset)),
    )


# =============================================================================
# Dates
# =============================================================================


def trunc(fmt: str, expr: Any) -> Call:
    return Call("TRUNC", (expr, Literal(fmt)))


def _to_number(fmt: str, expr: Any) -> Call:
    return Call("TO_NUMBER", (Call("TO_CHAR", (expr, Literal(fmt))),))


TRUNCATIONS = {
    "minute": "MI",
    "hour": "HH",
    "day": "DD",
    # [sic] 'DAY' truncates to the first day of the week
    "week": "DAY",
    "month": "MONTH",
    "quarter": "Q",
    "year": "YEAR",
}

for _unit, _fmt in TRUNCATIONS.items():
    date_bucket.register("oracle", key=_unit)(lambda driver, unit, expr, _fmt=_fmt: trunc(_fmt, expr))

for _unit, _fmt in {"day-of-week": "D", "week-of-year": "WW", "quarter-of-year": "Q"}.items():
    date_bucket.register("oracle", key=_unit)(lambda driver, unit, expr, _fmt=_fmt: _to_number(_fmt, expr))


@date_bucket.register("oracle", key="minute-of-hour")
def _(driver: str, unit: str, expr: Any) -> Any:
    return Extract("MINUTE", Cast(expr, "TIMESTAMP"))


@date_bucket.register("oracle", key="hour-of-day")
def _(driver: str, unit: str, expr: Any) -> Any:
    return Extract("HOUR", Cast(expr, "TIMESTAMP"))


@date_bucket.register("oracle", key="day-of-year")
def _(driver: str, unit: str, expr: Any) -> Any:
    return BinaryOp("+", BinaryOp("-", trunc("DD", expr), trunc("YEAR", expr)), Literal(1))


MONTHS_PER_UNIT = {"month": 1, "quarter": 3, "year": 12}
DAYS_PER_UNIT = {"day": ("day", 1), "week": ("day", 7), "hour": ("hour", 1), "minute": ("minute", 1)}


@add_interval.register("oracle")
def _(driver: str, expr: Any, amount: int, unit: str) -> Any:
    if unit in MONTHS_PER_UNIT:
        return Call("ADD_MONTHS", (expr, Literal(int(amount) * MONTHS_PER_UNIT[unit])))
    interval_unit, multiplier = DAYS_PER_UNIT[unit]
    return BinaryOp("+", expr, Call("NUMTODSINTERVAL", (Literal(int(amount) * multiplier), Literal(interval_unit))))


# =============================================================================
# Sync
# =============================================================================


@describe_database.register("oracle")
def _(driver: str, connection: Any, details: dict[str, Any]) -> list[dict[str, Any]]:
    owner = (details.get("user") or "").upper()
    rows = fetch_all(
        driver, connection, "SELECT owner, table_name FROM all_tables WHERE owner = :1 ORDER BY table_name", [owner]
    )
    return [{"schema": schema, "name": name} for schema, name in rows]


@describe_table.register("oracle")
def _(driver: str, connection: Any, table: TableMetadata) -> list[dict[str, Any]]:
    rows = fetch_all(
        driver,
        connection,
        "SELECT column_name, data_type FROM all_tab_columns WHERE owner = :1 AND table_name = :2 ORDER BY column_id",
        [table.schema, table.name],
    )
    return [
        {"name": name, "database_type": data_type, "base_type": database_type_to_base_type(driver, data_type)}
        for name, data_type in rows
    ]
