"""The abstract `sql-dbapi` driver: execution over PEP 249 connections.

Concrete drivers supply `connect` and the dialect; this module runs the
statement, streams rows in `fetchmany` batches, builds column metadata and
wraps engine errors.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from quarry.driver import register
from quarry.driver.base import (
    cancel_query,
    database_type_to_base_type,
    describe_database,
    describe_table,
    execute_reducible_query,
    humanize_error,
)
from quarry.driver.sql.capabilities import param_placeholder
from quarry.driver.sql.compiler import ROWNUM_ALIAS
from quarry.errors import DriverExecutionError, QuarryError
from quarry.metadata import TableMetadata
from quarry.query.ast import NativeQuery
from quarry.types import base_type_for_value

logger = logging.getLogger(__name__)

register("sql-dbapi", parents=["sql"], abstract=True)

SYSTEM_SCHEMAS = ("information_schema", "pg_catalog", "sys", "INFORMATION_SCHEMA")


# =============================================================================
# Column Metadata
# =============================================================================


def column_metadata(driver: str, description: Any, first_batch: list[Any]) -> list[dict[str, Any]]:
    """Normalize a cursor description into column metadata.

    Column types the driver does not report (SQLite reports none) are
    inferred from the first non-NULL value in `first_batch`.
    """
    cols = []
    for i, column in enumerate(description or ()):
        name = column[0]
        database_type = column[1]
        if database_type is not None and not isinstance(database_type, str):
            database_type = getattr(database_type, "__name__", None) or str(database_type)
        base_type = database_type_to_base_type(driver, database_type) if database_type else "type/*"
        if base_type == "type/*":
            sample = next((row[i] for row in first_batch if row[i] is not None), None)
            if sample is not None:
                base_type = base_type_for_value(sample)
        cols.append(
            {
                "name": name,
                "display_name": name,
                "base_type": base_type,
                "database_type": database_type,
                "source": "native",
                "field_ref": ["field", name, {"base-type": base_type}],
            }
        )
    return cols


def pattern_based_base_type(patterns: list[tuple[str, str]], database_type: str | None) -> str:
    """Base type for `database_type` from the first matching (regex, base type) pair."""
    if not database_type:
        return "type/*"
    for pattern, base_type in patterns:
        if re.search(pattern, database_type, re.IGNORECASE):
            return base_type
    return "type/*"


def _state_and_code(error: BaseException) -> tuple[str | None, Any]:
    """SQLSTATE and vendor error code, from whichever attribute the driver uses."""
    state = getattr(error, "pgcode", None) or getattr(error, "sqlstate", None)
    code = getattr(error, "sqlite_errorcode", None) or getattr(error, "code", None)
    args = getattr(error, "args", ())
    # pyodbc: Error(sqlstate, message)
    if state is None and len(args) >= 2 and isinstance(args[0], str) and len(args[0]) == 5:
        state = args[0]
    return state, code


def wrap_driver_error(driver: str, error: BaseException) -> DriverExecutionError:
    message = str(error).strip() or type(error).__name__
    state, code = _state_and_code(error)
    wrapped = DriverExecutionError(humanize_error(driver, message), driver=driver, state=state, code=code)
    wrapped.__cause__ = error
    return wrapped


# =============================================================================
# Execution
# =============================================================================


@execute_reducible_query.register("sql-dbapi")
def _(driver: str, native: NativeQuery, context: Any, rff: Any, connection: Any) -> Any:
    sql = native.query
    params = list(native.params)
    logger.debug(f"Executing {driver} query: {sql}")

    cursor = connection.cursor()
    hook = lambda: cancel_query(driver, connection, cursor)  # noqa: E731
    context.add_cancel_hook(hook)
    try:
        context.check_cancelled()
        try:
            if params:
                cursor.execute(sql, params)
            else:
                cursor.execute(sql)
            first_batch = cursor.fetchmany(context.fetch_size) if cursor.description else []
        except QuarryError:
            raise
        except Exception as e:
            if context.is_cancelled:
                raise context.cancellation_error() from e
            context.raisef(wrap_driver_error(driver, e))

        metadata = column_metadata(driver, cursor.description, first_batch)
        hidden = [i for i, col in enumerate(metadata) if col["name"] == ROWNUM_ALIAS]
        if hidden:
            metadata = [col for i, col in enumerate(metadata) if i not in hidden]
        context.metadata = metadata
        reducer = rff(metadata)

        batch = first_batch
        while batch:
            for row in batch:
                if context.max_rows is not None and context.row_count >= context.max_rows:
                    return reducer.finish()
                if hidden:
                    row = tuple(v for i, v in enumerate(row) if i not in hidden)
                reducer.step(tuple(row))
                context.row_count += 1
            context.check_cancelled()
            try:
                batch = cursor.fetchmany(context.fetch_size)
            except Exception as e:
                if context.is_cancelled:
                    raise context.cancellation_error() from e
                context.raisef(wrap_driver_error(driver, e))
        return reducer.finish()
    finally:
        context.remove_cancel_hook(hook)
        try:
            cursor.close()
        except Exception as e:
            logger.debug(f"Error closing cursor: {e}")


@cancel_query.register("sql-dbapi")
def _(driver: str, connection: Any, cursor: Any) -> None:
    cancel = getattr(cursor, "cancel", None)
    if cancel is not None:
        cancel()


# =============================================================================
# Sync
# =============================================================================


def fetch_all(driver: str, connection: Any, sql: str, params: list[Any] | None = None) -> list[tuple]:
    cursor = connection.cursor()
    try:
        cursor.execute(sql, params or [])
        return [tuple(row) for row in cursor.fetchall()]
    finally:
        cursor.close()


@describe_database.register("sql-dbapi")
def _(driver: str, connection: Any, details: dict[str, Any]) -> list[dict[str, Any]]:
    rows = fetch_all(
        driver,
        connection,
        "SELECT table_schema, table_name FROM information_schema.tables ORDER BY table_schema, table_name",
    )
    return [{"schema": schema, "name": name} for schema, name in rows if schema not in SYSTEM_SCHEMAS]


@describe_table.register("sql-dbapi")
def _(driver: str, connection: Any, table: TableMetadata) -> list[dict[str, Any]]:
    sql = (
        "SELECT column_name, data_type FROM information_schema.columns "
        f"WHERE table_schema = {param_placeholder(driver, 1)} AND table_name = {param_placeholder(driver, 2)} "
        "ORDER BY ordinal_position"
    )
    rows = fetch_all(driver, connection, sql, [table.schema, table.name])
    return [
        {"name": name, "database_type": data_type, "base_type": database_type_to_base_type(driver, data_type)}
        for name, data_type in rows
    ]
