"""Quarry queries - normalization, parsing and type resolution.

A query document goes through three pure stages before any driver sees it:

    normalize(raw)            canonical lisp-case document, legacy forms expanded
    parse(normalized)         closed AST of frozen dataclasses
    resolve(query, provider)  field and table metadata attached

Example:
    >>> from quarry.query import normalize, parse
    >>> query = parse(normalize({"database": 1, "query": {"source_table": 2, "aggregation": "count"}}))
    >>> query.query.aggregation
    (Aggregation(op='count', arg=None, predicate=None, name=None, display_name=None),)
"""

from quarry.query.ast import (
    Aggregation,
    FieldRef,
    InnerQuery,
    NativeQuery,
    Parameter,
    Query,
    QueryType,
    TemplateTag,
)
from quarry.query.normalize import normalize
from quarry.query.parser import parse
from quarry.query.resolver import resolve

__all__ = [
    "Aggregation",
    "FieldRef",
    "InnerQuery",
    "NativeQuery",
    "Parameter",
    "Query",
    "QueryType",
    "TemplateTag",
    "normalize",
    "parse",
    "resolve",
]
