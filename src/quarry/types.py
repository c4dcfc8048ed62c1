"""Semantic type hierarchy and coercion strategies.

Types are strings such as "type/Integer". `isa` answers hierarchy questions
("is an Integer a Number?") and `effective_type` computes the type a column
behaves as once its coercion strategy has been applied.
"""

from __future__ import annotations

import datetime
import decimal
from typing import Any

# child -> parent; "type/*" is the root
TYPE_PARENTS: dict[str, str] = {
    "type/Number": "type/*",
    "type/Integer": "type/Number",
    "type/BigInteger": "type/Integer",
    "type/Float": "type/Number",
    "type/Decimal": "type/Float",
    "type/Text": "type/*",
    "type/UUID": "type/Text",
    "type/TextLike": "type/*",
    "type/Boolean": "type/*",
    "type/Temporal": "type/*",
    "type/Date": "type/Temporal",
    "type/Time": "type/Temporal",
    "type/DateTime": "type/Temporal",
    "type/DateTimeWithTZ": "type/DateTime",
    "type/DateTimeWithLocalTZ": "type/DateTimeWithTZ",
    "type/Instant": "type/DateTime",
    "type/Structured": "type/*",
    "type/Dictionary": "type/Structured",
    "type/Array": "type/Structured",
    "type/SerializedJSON": "type/Structured",
    "type/Binary": "type/*",
}

# Coercion strategy -> effective type it produces
COERCION_EFFECTIVE_TYPES: dict[str, str] = {
    "Coercion/ISO8601->Date": "type/Date",
    "Coercion/ISO8601->DateTime": "type/DateTime",
    "Coercion/ISO8601->Time": "type/Time",
    "Coercion/YYYYMMDDHHMMSSString->Temporal": "type/DateTime",
    "Coercion/UNIXSeconds->DateTime": "type/Instant",
    "Coercion/UNIXMilliSeconds->DateTime": "type/Instant",
    "Coercion/UNIXMicroSeconds->DateTime": "type/Instant",
    "Coercion/String->Float": "type/Float",
    "Coercion/Float->Integer": "type/Integer",
}

# Temporal units that truncate a value to the start of a period
TRUNCATION_UNITS = ("minute", "hour", "day", "week", "month", "quarter", "year")

# Temporal units that extract a number from a value
EXTRACTION_UNITS = (
    "minute-of-hour",
    "hour-of-day",
    "day-of-week",
    "day-of-month",
    "day-of-year",
    "week-of-year",
    "month-of-year",
    "quarter-of-year",
)

TEMPORAL_UNITS = ("default",) + TRUNCATION_UNITS + EXTRACTION_UNITS

# Units that make sense for values with no time component
DATE_UNITS = ("default", "day", "week", "month", "quarter", "year") + tuple(
    u for u in EXTRACTION_UNITS if u not in ("minute-of-hour", "hour-of-day")
)
TIME_UNITS = ("default", "minute", "hour", "minute-of-hour", "hour-of-day")


def ancestors(type_name: str) -> list[str]:
    """All ancestors of `type_name`, nearest first."""
    result = []
    current = TYPE_PARENTS.get(type_name)
    while current is not None:
        result.append(current)
        current = TYPE_PARENTS.get(current)
    return result


def isa(type_name: str | None, parent: str) -> bool:
    """Does `type_name` derive from `parent` (or equal it)?"""
    if type_name is None:
        return False
    return type_name == parent or parent in ancestors(type_name)


def is_temporal(type_name: str | None) -> bool:
    return isa(type_name, "type/Temporal")


def is_numeric(type_name: str | None) -> bool:
    return isa(type_name, "type/Number")


def effective_type(base_type: str, coercion_strategy: str | None = None) -> str:
    """The type a column behaves as after applying `coercion_strategy`."""
    if coercion_strategy is None:
        return base_type
    return COERCION_EFFECTIVE_TYPES.get(coercion_strategy, base_type)


def valid_temporal_unit(type_name: str | None, unit: str) -> bool:
    """Can values of `type_name` be bucketed by `unit`?"""
    if unit not in TEMPORAL_UNITS:
        return False
    if isa(type_name, "type/Date"):
        return unit in DATE_UNITS
    if isa(type_name, "type/Time"):
        return unit in TIME_UNITS
    return True


def base_type_for_value(value: Any) -> str:
    """Best-effort base type for a Python value, used when a driver reports no column type."""
    if isinstance(value, bool):
        return "type/Boolean"
    if isinstance(value, int):
        return "type/Integer"
    if isinstance(value, decimal.Decimal):
        return "type/Decimal"
    if isinstance(value, float):
        return "type/Float"
    if isinstance(value, str):
        return "type/Text"
    if isinstance(value, datetime.datetime):
        return "type/DateTimeWithTZ" if value.tzinfo else "type/DateTime"
    if isinstance(value, datetime.date):
        return "type/Date"
    if isinstance(value, datetime.time):
        return "type/Time"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "type/Binary"
    if isinstance(value, dict):
        return "type/Dictionary"
    if isinstance(value, (list, tuple)):
        return "type/Array"
    return "type/*"
