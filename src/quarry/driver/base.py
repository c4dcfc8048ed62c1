"""Driver-level capabilities every driver may implement.

These are the extension points of the driver module contract. Each driver
module registers itself with `quarry.driver.register` and then supplies
implementations for the capabilities it needs; anything it leaves out is
inherited from its parents or falls back to the defaults below.
"""

from __future__ import annotations

import logging
from typing import Any

from quarry.config import DEFAULT_ALIAS_MAX_LENGTH_BYTES
from quarry.driver.dispatch import Capability
from quarry.driver.impl import truncate_alias

logger = logging.getLogger(__name__)


# Features a driver can claim through `supports`
FEATURES = frozenset(
    {
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
        "date-arithmetics",
        "temporal-extract",
        "set-timezone",
        "offset",
        "binning",
    }
)


def _feature_key(feature: str, database: Any = None) -> str:
    return feature


def _not_supported(driver: str, feature: str, database: Any = None) -> bool:
    return False


def _noop(driver: str, *args: Any) -> None:
    return None


def _default_escape_alias(driver: str, alias: str) -> str:
    return truncate_alias(alias, DEFAULT_ALIAS_MAX_LENGTH_BYTES)


# Called once per driver by `the_driver`, after its parents have been initialized
initialize = Capability("initialize", default=_noop)

# supports(driver, feature, database=None) -> bool
supports = Capability("supports", default=_not_supported, key=_feature_key)

# connection_spec(driver, details) -> dict of keyword arguments for the DB-API connect()
connection_spec = Capability("connection_spec")

# connect(driver, details) -> an open connection
connect = Capability("connect")

# database_type_to_base_type(driver, database_type) -> semantic base type such as "type/Integer"
database_type_to_base_type = Capability(
    "database_type_to_base_type",
    default=lambda driver, database_type: "type/*",
)

# escape_alias(driver, alias) -> alias that is legal as an identifier for the database
escape_alias = Capability("escape_alias", default=_default_escape_alias)

# humanize_error(driver, message) -> friendlier message for a native error
humanize_error = Capability("humanize_error", default=lambda driver, message: message)

# mbql_to_native(driver, query) -> NativeQuery
mbql_to_native = Capability("mbql_to_native")

# substitute_native_parameters(driver, native, parameters) -> NativeQuery with tags replaced
substitute_native_parameters = Capability("substitute_native_parameters")

# execute_reducible_query(driver, native, context, rff, connection) -> reduced result
execute_reducible_query = Capability("execute_reducible_query")

# describe_database(driver, connection, details) -> list of {"schema": ..., "name": ...}
describe_database = Capability("describe_database")

# describe_table(driver, connection, table) -> list of {"name": ..., "database_type": ..., "base_type": ...}
describe_table = Capability("describe_table")

# db_start_of_week(driver) -> "sunday" | "monday" | ...
db_start_of_week = Capability("db_start_of_week", default=lambda driver: "sunday")

# cancel_query(driver, connection, statement) -> None; called from another thread
cancel_query = Capability("cancel_query", default=_noop)

# set_isolation_level(driver, connection) -> None; run once per checkout before executing
set_isolation_level = Capability("set_isolation_level", default=_noop)
