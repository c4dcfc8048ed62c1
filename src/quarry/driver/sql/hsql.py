"""A small SQL expression tree and formatter.

The compiler builds these nodes; `format_sql` turns them into SQL text and a
list of bound parameters, quoting identifiers and emitting placeholders through
the driver's capabilities so one tree renders correctly for every dialect.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Union

from quarry.driver.sql.capabilities import boolean_value, param_placeholder, quote_identifier

# =============================================================================
# Nodes
# =============================================================================


@dataclass(frozen=True)
class Identifier:
    """A possibly qualified identifier, e.g. ("PUBLIC", "ORDERS", "ID")."""

    parts: tuple[str, ...]

    @classmethod
    def of(cls, *parts: str | None) -> Identifier:
        return cls(tuple(p for p in parts if p))


@dataclass(frozen=True)
class Raw:
    """SQL text inserted verbatim, with its own bound parameters."""

    sql: str
    params: tuple[Any, ...] = ()


@dataclass(frozen=True)
class Param:
    """A bound parameter."""

    value: Any


@dataclass(frozen=True)
class Literal:
    """A value inlined into the SQL text (strings are quoted)."""

    value: Any


@dataclass(frozen=True)
class Call:
    """A function call, e.g. Call("date_trunc", (Literal("month"), col))."""

    name: str
    args: tuple[Expr, ...] = ()
    distinct: bool = False


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Junction:
    """AND / OR over any number of conditions."""

    op: str
    args: tuple[Expr, ...]


@dataclass(frozen=True)
class Negation:
    expr: Expr


@dataclass(frozen=True)
class Postfix:
    """`expr IS NULL` and similar."""

    expr: Expr
    op: str


@dataclass(frozen=True)
class BetweenOp:
    expr: Expr
    low: Expr
    high: Expr


@dataclass(frozen=True)
class Alias:
    expr: Expr
    name: str


@dataclass(frozen=True)
class Cast:
    expr: Expr
    type_name: str


@dataclass(frozen=True)
class Extract:
    """EXTRACT(part FROM expr)."""

    part: str
    expr: Expr


@dataclass(frozen=True)
class Case:
    whens: tuple[tuple[Expr, Expr], ...]
    default: Expr | None = None


@dataclass(frozen=True)
class Star:
    """`*`, or `"table".*`."""

    table: str | None = None


@dataclass(frozen=True)
class Over:
    """A window function, e.g. ROW_NUMBER() OVER (ORDER BY ...)."""

    func: Call
    order_by: tuple[OrderItem, ...] = ()


@dataclass(frozen=True)
class Subquery:
    """A SELECT (or native SQL) used as a table."""

    query: Select | Raw
    alias: str | None = None


@dataclass(frozen=True)
class JoinClause:
    kind: str  # "LEFT JOIN", "INNER JOIN", ...
    source: Identifier | Subquery
    alias: str
    condition: Expr


@dataclass(frozen=True)
class OrderItem:
    expr: Expr
    direction: str = "ASC"


@dataclass(frozen=True)
class Select:
    """A SELECT statement.

    `limit`/`offset` render as LIMIT/OFFSET; `top` renders as SELECT TOP n;
    `fetch` renders as OFFSET m ROWS FETCH NEXT n ROWS ONLY.
    """

    select: tuple[Expr, ...] = ()
    from_: Identifier | Subquery | None = None
    from_alias: str | None = None
    joins: tuple[JoinClause, ...] = ()
    where: Expr | None = None
    group_by: tuple[Expr, ...] = ()
    order_by: tuple[OrderItem, ...] = ()
    limit: int | None = None
    offset: int | None = None
    top: int | None = None
    fetch: tuple[int, int] | None = None
    distinct: bool = False

    def add_select(self, *exprs: Expr) -> Select:
        return replace(self, select=self.select + tuple(exprs))

    def add_where(self, condition: Expr) -> Select:
        if self.where is None:
            return replace(self, where=condition)
        return replace(self, where=Junction("AND", (self.where, condition)))


Expr = Union[
    Identifier,
    Raw,
    Param,
    Literal,
    Call,
    BinaryOp,
    Junction,
    Negation,
    Postfix,
    BetweenOp,
    Alias,
    Cast,
    Extract,
    Case,
    Star,
    Over,
    Subquery,
    Select,
]


def and_(*conditions: Expr | None) -> Expr | None:
    args = tuple(c for c in conditions if c is not None)
    if not args:
        return None
    return args[0] if len(args) == 1 else Junction("AND", args)


def or_(*conditions: Expr | None) -> Expr | None:
    args = tuple(c for c in conditions if c is not None)
    if not args:
        return None
    return args[0] if len(args) == 1 else Junction("OR", args)


# =============================================================================
# Formatter
# =============================================================================

# Lower binds looser
PRECEDENCE = {
    "OR": 1,
    "AND": 2,
    "NOT": 3,
    "=": 4,
    "<>": 4,
    "!=": 4,
    "<": 4,
    ">": 4,
    "<=": 4,
    ">=": 4,
    "LIKE": 4,
    "NOT LIKE": 4,
    "IS": 4,
    "BETWEEN": 4,
    "||": 5,
    "+": 5,
    "-": 5,
    "*": 6,
    "/": 6,
    "%": 6,
}
ATOM = 10


class SQLFormatter:
    """Renders an expression tree for one driver.

    Parameters accumulate across calls, so the same formatter can render
    several fragments of one statement (native parameter substitution does this).
    """

    def __init__(self, driver: str, params: list[Any] | None = None) -> None:
        self.driver = driver
        self.params: list[Any] = params if params is not None else []

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    def quote(self, name: str) -> str:
        return quote_identifier(self.driver, name)

    def param(self, value: Any) -> str:
        self.params.append(value)
        return param_placeholder(self.driver, len(self.params))

    def literal(self, value: Any) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return boolean_value(self.driver, value)
        if isinstance(value, (int, float)):
            return repr(value)
        return "'" + str(value).replace("'", "''") + "'"

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def _precedence(self, expr: Expr) -> int:
        if isinstance(expr, BinaryOp):
            return PRECEDENCE.get(expr.op.upper(), 4)
        if isinstance(expr, Junction):
            return PRECEDENCE[expr.op]
        if isinstance(expr, Negation):
            return PRECEDENCE["NOT"]
        if isinstance(expr, (Postfix, BetweenOp)):
            return 4
        return ATOM

    def _operand(self, expr: Expr, parent: int, strict: bool = False) -> str:
        sql = self.format(expr)
        child = self._precedence(expr)
        if child < parent or (strict and child == parent):
            return f"({sql})"
        return sql

    def format(self, expr: Expr) -> str:
        if isinstance(expr, Identifier):
            return ".".join(self.quote(p) for p in expr.parts)
        if isinstance(expr, Raw):
            self.params.extend(expr.params)
            return expr.sql
        if isinstance(expr, Param):
            return self.param(expr.value)
        if isinstance(expr, Literal):
            return self.literal(expr.value)
        if isinstance(expr, Call):
            args = ", ".join(self.format(a) for a in expr.args)
            return f"{expr.name}({'DISTINCT ' if expr.distinct else ''}{args})"
        if isinstance(expr, BinaryOp):
            prec = self._precedence(expr)
            left = self._operand(expr.left, prec)
            right = self._operand(expr.right, prec, strict=True)
            return f"{left} {expr.op} {right}"
        if isinstance(expr, Junction):
            prec = PRECEDENCE[expr.op]
            return f" {expr.op} ".join(self._operand(a, prec, strict=True) for a in expr.args)
        if isinstance(expr, Negation):
            return f"NOT ({self.format(expr.expr)})"
        if isinstance(expr, Postfix):
            return f"{self._operand(expr.expr, 5)} {expr.op}"
        if isinstance(expr, BetweenOp):
            # Operands in order, so placeholders bind left to right
            operands = [self._operand(e, 5) for e in (expr.expr, expr.low, expr.high)]
            return f"{operands[0]} BETWEEN {operands[1]} AND {operands[2]}"
        if isinstance(expr, Alias):
            return f"{self.format(expr.expr)} AS {self.quote(expr.name)}"
        if isinstance(expr, Cast):
            return f"CAST({self.format(expr.expr)} AS {expr.type_name})"
        if isinstance(expr, Extract):
            return f"EXTRACT({expr.part} FROM {self.format(expr.expr)})"
        if isinstance(expr, Case):
            whens = " ".join(f"WHEN {self.format(c)} THEN {self.format(v)}" for c, v in expr.whens)
            default = f" ELSE {self.format(expr.default)}" if expr.default is not None else ""
            return f"CASE {whens}{default} END"
        if isinstance(expr, Star):
            return f"{self.quote(expr.table)}.*" if expr.table else "*"
        if isinstance(expr, Over):
            order = ", ".join(f"{self.format(o.expr)} {o.direction}" for o in expr.order_by)
            return f"{self.format(expr.func)} OVER ({'ORDER BY ' + order if order else ''})"
        if isinstance(expr, Subquery):
            alias = f" {self.quote(expr.alias)}" if expr.alias else ""
            return f"({self.format(expr.query)}){alias}"
        if isinstance(expr, Select):
            return self.format_select(expr)
        raise TypeError(f"Cannot format {type(expr).__name__} as SQL")

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def _from(self, select: Select) -> str:
        source = self.format(select.from_)
        if select.from_alias and isinstance(select.from_, Identifier):
            source += f" {self.quote(select.from_alias)}"
        return source

    def format_select(self, select: Select) -> str:
        parts = ["SELECT"]
        if select.top is not None:
            parts.append(f"TOP {int(select.top)}")
        if select.distinct:
            parts.append("DISTINCT")
        parts.append(", ".join(self.format(e) for e in select.select) if select.select else "*")
        if select.from_ is not None:
            parts.append(f"FROM {self._from(select)}")
        for join in select.joins:
            source = self.format(join.source)
            if isinstance(join.source, Identifier):
                source += f" {self.quote(join.alias)}"
            parts.append(f"{join.kind} {source} ON {self.format(join.condition)}")
        if select.where is not None:
            parts.append(f"WHERE {self.format(select.where)}")
        if select.group_by:
            parts.append("GROUP BY " + ", ".join(self.format(e) for e in select.group_by))
        if select.order_by:
            parts.append("ORDER BY " + ", ".join(f"{self.format(o.expr)} {o.direction}" for o in select.order_by))
        if select.limit is not None:
            parts.append(f"LIMIT {int(select.limit)}")
        if select.offset is not None:
            parts.append(f"OFFSET {int(select.offset)}")
        if select.fetch is not None:
            offset, n = select.fetch
            parts.append(f"OFFSET {int(offset)} ROWS FETCH NEXT {int(n)} ROWS ONLY")
        return " ".join(parts)


def format_sql(expr: Expr, driver: str) -> tuple[str, list[Any]]:
    """Render `expr` as SQL for `driver`, returning the text and its parameters."""
    formatter = SQLFormatter(driver)
    sql = formatter.format(expr)
    return sql, formatter.params
