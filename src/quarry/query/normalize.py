"""Query normalizer - rewrite loosely shaped query documents into canonical form.

Input comes off the wire as nested dicts and lists with any key casing,
shorthand field references and legacy clause forms. The output uses lisp-case
keys, canonical clause shapes and contains no empty clauses, so the parser
only has to understand one shape.

    normalize({"query": {"source_table": 1, "aggregation": "count", "breakout": 10}})
    # -> {"type": "query",
    #     "query": {"source-table": 1,
    #               "aggregation": [["count"]],
    #               "breakout": [["field", 10, None]]}}

`normalize` is pure and idempotent.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from quarry.errors import InvalidQuery

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")

DIRECTIONS = {"asc": "asc", "desc": "desc", "ascending": "asc", "descending": "desc"}

# Clauses whose first argument is a field reference (an int there means a field id)
FIELD_FIRST_FILTERS = frozenset(
    {
        "=",
        "!=",
        "<",
        ">",
        "<=",
        ">=",
        "between",
        "is-null",
        "not-null",
        "is-empty",
        "not-empty",
        "starts-with",
        "ends-with",
        "contains",
        "does-not-contain",
        "time-interval",
    }
)

STRING_FILTERS = frozenset({"starts-with", "ends-with", "contains", "does-not-contain"})


# =============================================================================
# Helpers
# =============================================================================


def to_lisp_case(key: Any) -> Any:
    """`source_table`, `sourceTable`, `SOURCE_TABLE` -> `source-table`."""
    if not isinstance(key, str):
        return key
    return _CAMEL_BOUNDARY.sub(r"\1-\2", key).replace("_", "-").lower()


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (dict, list, tuple)) and len(value) == 0)


def _compact(m: dict[Any, Any]) -> dict[Any, Any]:
    return {k: v for k, v in m.items() if not _is_empty(v)}


def _lisp_keys(m: Any, clause: str) -> dict[str, Any]:
    if not isinstance(m, dict):
        raise InvalidQuery(f"Invalid {clause}: expected a map, got {m!r}", clause=clause)
    return {to_lisp_case(k): v for k, v in m.items()}


def _options(opts: Any) -> dict[str, Any] | None:
    """Normalize a clause options map; empty maps become None."""
    if opts is None:
        return None
    if not isinstance(opts, dict):
        return opts
    normalized = {}
    for k, v in opts.items():
        key = to_lisp_case(k)
        if key == "temporal-unit" and isinstance(v, str):
            v = to_lisp_case(v)
        normalized[key] = v
    return _compact(normalized) or None


def _is_clause(x: Any) -> bool:
    return isinstance(x, (list, tuple)) and len(x) > 0 and isinstance(x[0], str)


# =============================================================================
# Field References
# =============================================================================


def _field_with_options(field: Any, **extra: Any) -> list[Any]:
    if not (_is_clause(field) and field[0] == "field" and len(field) == 3):
        raise InvalidQuery(f"Expected a field reference, got {field!r}", clause="field")
    opts = dict(field[2] or {})
    opts.update({to_lisp_case(k.replace("_", "-")): v for k, v in extra.items()})
    return ["field", field[1], _compact(opts) or None]


def normalize_field_ref(x: Any) -> Any:
    """Normalize anything used in a field position: a bare id, a field clause, or a legacy form."""
    if isinstance(x, bool):
        return x
    if isinstance(x, int):
        return ["field", x, None]
    if _is_clause(x):
        return normalize_clause(x)
    return x


def _normalize_field(clause: list[Any]) -> list[Any]:
    opts = _options(clause[2]) if len(clause) == 3 else None
    return ["field", clause[1], opts]


def _legacy_field_id(clause: list[Any]) -> list[Any]:
    return ["field", clause[1], None]


def _legacy_field_literal(clause: list[Any]) -> list[Any]:
    base_type = clause[2] if len(clause) > 2 else None
    return ["field", clause[1], {"base-type": base_type} if base_type else None]


def _legacy_fk(clause: list[Any]) -> list[Any]:
    source = normalize_field_ref(clause[1])
    dest = normalize_field_ref(clause[2])
    return _field_with_options(dest, source_field=source[1])


def _legacy_datetime_field(clause: list[Any]) -> list[Any]:
    # ["datetime-field", f, unit] or ["datetime-field", f, "as", unit]
    field = normalize_field_ref(clause[1])
    return _field_with_options(field, temporal_unit=to_lisp_case(clause[-1]))


def _legacy_joined_field(clause: list[Any]) -> list[Any]:
    field = normalize_field_ref(clause[2])
    return _field_with_options(field, join_alias=clause[1])


def _legacy_named(clause: list[Any]) -> list[Any]:
    name = clause[2]
    return ["aggregation-options", normalize_aggregation(clause[1]), {"name": name, "display-name": name}]


_LEGACY_CLAUSES: dict[str, Callable[[list[Any]], list[Any]]] = {
    "field": _normalize_field,
    "field-id": _legacy_field_id,
    "field-literal": _legacy_field_literal,
    "fk->": _legacy_fk,
    "datetime-field": _legacy_datetime_field,
    "joined-field": _legacy_joined_field,
    "named": _legacy_named,
}

# Allowed lengths of each legacy clause, name included
_LEGACY_ARITY: dict[str, tuple[int, ...]] = {
    "field": (2, 3),
    "field-id": (2,),
    "field-literal": (2, 3),
    "fk->": (3,),
    "datetime-field": (3, 4),
    "joined-field": (3,),
    "named": (3, 4),
}


def _rewrite_legacy(name: str, clause: list[Any]) -> list[Any]:
    if len(clause) not in _LEGACY_ARITY[name]:
        raise InvalidQuery(f"Invalid {name} clause: {clause!r}", clause=name)
    return _LEGACY_CLAUSES[name]([name, *clause[1:]])


# =============================================================================
# Clauses
# =============================================================================


def _normalize_arg(x: Any) -> Any:
    if _is_clause(x):
        return normalize_clause(x)
    if isinstance(x, dict):
        return _options(x)
    return x


def normalize_clause(clause: Any) -> Any:
    """Normalize a generic clause: lisp-case the name, rewrite legacy forms, recurse into arguments."""
    if not _is_clause(clause):
        raise InvalidQuery(f"Invalid clause: {clause!r}", clause=str(clause))
    name = to_lisp_case(clause[0])
    if name in _LEGACY_CLAUSES:
        return _rewrite_legacy(name, clause)
    if name in FIELD_FIRST_FILTERS or name in ("and", "or", "not"):
        return normalize_filter([name, *clause[1:]])
    return [name, *(_normalize_arg(a) for a in clause[1:])]


def normalize_filter(clause: Any) -> Any:
    """Normalize a filter clause. Returns None for empty compound filters."""
    if _is_empty(clause):
        return None
    if not _is_clause(clause):
        raise InvalidQuery(f"Invalid filter clause: {clause!r}", clause="filter")
    name = to_lisp_case(clause[0])
    args = list(clause[1:])

    if name in ("and", "or"):
        children = []
        for arg in args:
            child = normalize_filter(arg)
            if child is None:
                continue
            # Flatten nested clauses of the same kind
            if child[0] == name:
                children.extend(child[1:])
            else:
                children.append(child)
        if not children:
            return None
        if len(children) == 1:
            return children[0]
        return [name, *children]

    if name == "not":
        if len(args) != 1:
            raise InvalidQuery(f"not expects exactly one clause: {clause!r}", clause="not")
        child = normalize_filter(args[0])
        return ["not", child] if child is not None else None

    if name in FIELD_FIRST_FILTERS:
        if not args:
            raise InvalidQuery(f"{name} clause is missing its field: {clause!r}", clause=name)
        normalized = [name, normalize_field_ref(args[0])]
        rest = args[1:]
        if name == "time-interval":
            rest = [to_lisp_case(r) if isinstance(r, str) else _normalize_arg(r) for r in rest]
        else:
            rest = [_normalize_arg(r) for r in rest]
        # Trailing empty options maps are dropped
        while rest and rest[-1] is None and (name in STRING_FILTERS or name == "time-interval"):
            rest.pop()
        return normalized + rest

    return normalize_clause([name, *args])


def normalize_aggregation(clause: Any) -> Any:
    if isinstance(clause, str):
        clause = [clause]
    if not _is_clause(clause):
        raise InvalidQuery(f"Invalid aggregation: {clause!r}", clause="aggregation")
    name = to_lisp_case(clause[0])
    if name == "aggregation-options":
        if len(clause) != 3:
            raise InvalidQuery(f"Invalid aggregation-options clause: {clause!r}", clause=name)
        return [name, normalize_aggregation(clause[1]), _options(clause[2])]
    if name == "named":
        return _rewrite_legacy(name, clause)
    args = []
    for arg in clause[1:]:
        if arg is None:
            continue
        if name.endswith("-where") and _is_clause(arg) and to_lisp_case(arg[0]) != "field":
            args.append(normalize_filter(arg))
        else:
            args.append(normalize_field_ref(arg))
    return [name, *args]


def _normalize_aggregations(value: Any) -> list[Any] | None:
    if isinstance(value, str) or _is_clause(value):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise InvalidQuery(f"Invalid aggregation: {value!r}", clause="aggregation")
    result = []
    for clause in value:
        normalized = normalize_aggregation(clause)
        # ["rows"] means "no aggregation"
        if normalized == ["rows"]:
            continue
        result.append(normalized)
    return result or None


def _normalize_field_list(value: Any) -> list[Any] | None:
    if isinstance(value, int) or _is_clause(value):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise InvalidQuery(f"Invalid field list: {value!r}", clause="fields")
    return [normalize_field_ref(f) for f in value] or None


def _normalize_order_by_item(item: Any) -> list[Any]:
    if _is_clause(item) and to_lisp_case(item[0]) in ("asc", "desc"):
        if len(item) != 2:
            raise InvalidQuery(f"Invalid order-by clause: {item!r}", clause="order-by")
        return [to_lisp_case(item[0]), normalize_field_ref(item[1])]
    # Legacy [field, "ascending"]
    if (
        isinstance(item, (list, tuple))
        and len(item) == 2
        and isinstance(item[1], str)
        and item[1].lower() in DIRECTIONS
        and not (isinstance(item[0], str))
    ):
        return [DIRECTIONS[item[1].lower()], normalize_field_ref(item[0])]
    if isinstance(item, int) or _is_clause(item):
        return ["asc", normalize_field_ref(item)]
    raise InvalidQuery(f"Invalid order-by clause: {item!r}", clause="order-by")


def _normalize_order_by(value: Any) -> list[Any] | None:
    if _is_clause(value) and to_lisp_case(value[0]) in ("asc", "desc"):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise InvalidQuery(f"Invalid order-by: {value!r}", clause="order-by")
    return [_normalize_order_by_item(item) for item in value] or None


def _normalize_expressions(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, dict):
        raise InvalidQuery(f"Invalid expressions: {value!r}", clause="expressions")
    # Expression names are user-chosen: keep them as they are
    return {name: _normalize_arg(expr) for name, expr in value.items()} or None


def _normalize_join(join: Any) -> dict[str, Any]:
    m = _lisp_keys(join, "join")
    result = {}
    for key, value in m.items():
        if key == "condition":
            value = normalize_filter(value)
        elif key == "source-query":
            value = _normalize_source_query(value)
        elif key == "fields":
            value = value.lower() if isinstance(value, str) else _normalize_field_list(value)
        elif key == "strategy" and isinstance(value, str):
            value = to_lisp_case(value)
        result[key] = value
    return _compact(result)


def _normalize_joins(value: Any) -> list[Any] | None:
    if not isinstance(value, (list, tuple)):
        raise InvalidQuery(f"Invalid joins: {value!r}", clause="joins")
    return [_normalize_join(j) for j in value] or None


def _normalize_source_query(value: Any) -> dict[str, Any]:
    m = _lisp_keys(value, "source-query")
    if "native" in m:
        return _compact({k: (_normalize_native(v) if k == "native" else v) for k, v in m.items()})
    return normalize_inner_query(value)


def _normalize_page(value: Any) -> dict[str, Any]:
    return _compact(_lisp_keys(value, "page"))


_INNER_CLAUSES: dict[str, Callable[[Any], Any]] = {
    "source-query": _normalize_source_query,
    "joins": _normalize_joins,
    "expressions": _normalize_expressions,
    "fields": _normalize_field_list,
    "breakout": _normalize_field_list,
    "aggregation": _normalize_aggregations,
    "filter": normalize_filter,
    "order-by": _normalize_order_by,
    "page": _normalize_page,
}


def normalize_inner_query(inner: Any) -> dict[str, Any]:
    m = _lisp_keys(inner, "query")
    result = {}
    for key, value in m.items():
        if _is_empty(value):
            continue
        normalizer = _INNER_CLAUSES.get(key)
        result[key] = normalizer(value) if normalizer else value
    return _compact(result)


# =============================================================================
# Native Queries and Parameters
# =============================================================================


def _normalize_template_tag(tag: Any) -> dict[str, Any]:
    m = _lisp_keys(tag, "template-tag")
    result = {}
    for key, value in m.items():
        if key == "type" and isinstance(value, str):
            value = to_lisp_case(value)
        elif key == "dimension" and value is not None:
            value = normalize_field_ref(value)
        result[key] = value
    return _compact(result)


def _normalize_native(native: Any) -> dict[str, Any]:
    if isinstance(native, str):
        native = {"query": native}
    m = _lisp_keys(native, "native")
    result = {}
    for key, value in m.items():
        if key == "template-tags" and isinstance(value, dict):
            # Tag names are user-chosen: keep them as they are
            value = {name: _normalize_template_tag(tag) for name, tag in value.items()}
        result[key] = value
    return _compact(result)


def _normalize_parameter(param: Any) -> dict[str, Any]:
    m = _lisp_keys(param, "parameter")
    result = {}
    for key, value in m.items():
        if key == "target" and _is_clause(value):
            value = normalize_clause(value)
        result[key] = value
    return _compact(result)


# =============================================================================
# Entry Point
# =============================================================================


def normalize(raw: Any) -> dict[str, Any]:
    """Normalize a query document.

    Raises:
        InvalidQuery: If the document cannot be interpreted as a query.
    """
    if not isinstance(raw, dict):
        raise InvalidQuery(f"Query must be a map, got {type(raw).__name__}", clause="query")
    m = {to_lisp_case(k): v for k, v in raw.items()}

    query_type = m.get("type")
    if isinstance(query_type, str):
        query_type = to_lisp_case(query_type)
    elif query_type is None:
        if "query" in m:
            query_type = "query"
        elif "native" in m:
            query_type = "native"
        else:
            raise InvalidQuery("Query must have a type, a query or a native clause", clause="type")

    result: dict[str, Any] = {"type": query_type}
    for key, value in m.items():
        if key == "type" or _is_empty(value):
            continue
        if key == "query":
            value = normalize_inner_query(value)
        elif key == "native":
            value = _normalize_native(value)
        elif key == "parameters":
            if not isinstance(value, (list, tuple)):
                raise InvalidQuery(f"Invalid parameters: {value!r}", clause="parameters")
            value = [_normalize_parameter(p) for p in value]
        elif key in ("constraints", "middleware", "info"):
            value = _compact(_lisp_keys(value, key))
        result[key] = value
    return _compact(result)
