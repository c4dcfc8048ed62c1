"""Mixin for databases that store the empty string as NULL (Oracle).

Comparisons against `""` become NULL checks; everything else is delegated to
the `sql` implementation.
"""

from __future__ import annotations

from typing import Any

from quarry.driver import register
from quarry.driver.sql.capabilities import to_sql
from quarry.driver.sql.hsql import Expr, Postfix, and_, or_
from quarry.query.ast import Compare, NullCheck, Value

register("empty-string-is-null", parents=["sql"], abstract=True)


def _is_empty_string(value: Any) -> bool:
    return isinstance(value, Value) and value.value == ""


@to_sql.register("empty-string-is-null", key=Compare)
def _(driver: str, node: Compare, ctx: Any) -> Expr:
    if node.op not in ("=", "!=") or not any(_is_empty_string(v) for v in node.values):
        return to_sql.get_method("sql", Compare)(driver, node, ctx)
    lhs = ctx.compile(node.field)
    null_op = "IS NULL" if node.op == "=" else "IS NOT NULL"
    clauses = [Postfix(lhs, null_op)]
    rest = tuple(v for v in node.values if not _is_empty_string(v))
    if rest:
        clauses.append(to_sql.get_method("sql", Compare)(driver, Compare(node.op, node.field, rest), ctx))
    return or_(*clauses) if node.op == "=" else and_(*clauses)


@to_sql.register("empty-string-is-null", key=NullCheck)
def _(driver: str, node: NullCheck, ctx: Any) -> Expr:
    if node.op == "is-empty":
        return Postfix(ctx.compile(node.field), "IS NULL")
    if node.op == "not-empty":
        return Postfix(ctx.compile(node.field), "IS NOT NULL")
    return to_sql.get_method("sql", NullCheck)(driver, node, ctx)
