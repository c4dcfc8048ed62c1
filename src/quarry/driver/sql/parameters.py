"""Native parameter substitution for SQL drivers.

Tag values become bound parameters in the driver's placeholder style. Field
filter (`dimension`) tags compile to a WHERE fragment through the same
`to_sql` implementations structured queries use.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from quarry.driver.base import substitute_native_parameters
from quarry.driver.sql.compiler import CompileContext
from quarry.driver.sql.hsql import Param, SQLFormatter
from quarry.errors import InvalidParameter
from quarry.query.ast import Compare, InnerQuery, NativeQuery, Parameter, TemplateTag, Value
from quarry.query.native import NO_VALUE, render

logger = logging.getLogger(__name__)


def _dimension_sql(driver: str, tag: TemplateTag, value: Any, formatter: SQLFormatter) -> str:
    if value is NO_VALUE:
        return "1 = 1"
    if tag.dimension is None:
        raise InvalidParameter(f"Field filter {tag.name} has no dimension", tag=tag.name)
    values = value if isinstance(value, list) else [value]
    condition = Compare("=", tag.dimension, tuple(Value(v) for v in values))
    ctx = CompileContext(driver, InnerQuery())
    return formatter.format(ctx.compile(condition))


def _value_sql(value: Any, formatter: SQLFormatter) -> str:
    if isinstance(value, list):
        return ", ".join(formatter.format(Param(v)) for v in value)
    return formatter.format(Param(value))


@substitute_native_parameters.register("sql")
def _(driver: str, native: NativeQuery, parameters: tuple[Parameter, ...]) -> NativeQuery:
    # One formatter for the whole statement so placeholders are numbered in order
    formatter = SQLFormatter(driver, list(native.params))

    def render_tag(tag: TemplateTag, value: Any) -> str:
        if tag.type == "dimension":
            return _dimension_sql(driver, tag, value, formatter)
        return _value_sql(value, formatter)

    sql = render(native, parameters, render_tag)
    logger.debug(f"Substituted {len(formatter.params) - len(native.params)} native parameters")
    return dataclasses.replace(native, query=sql, params=tuple(formatter.params), template_tags=())
