"""Schema/type resolver - attach metadata to every field and table reference.

The compiler needs to know a column's effective type to pick date functions and
casts, and a table's schema and name to reference it. `resolve` returns a new
AST with that metadata attached; the input is never modified.

Permission checks do not happen here: a field that is missing from the
provider is a `FieldResolutionError`, never a permissions error.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from quarry.errors import FieldResolutionError, InvalidQuery
from quarry.metadata import FieldMetadata, MetadataProvider, TableMetadata
from quarry.query.ast import (
    Aggregation,
    Arithmetic,
    Between,
    Compare,
    FieldRef,
    Filter,
    InnerQuery,
    Join,
    Logical,
    NativeQuery,
    Not,
    NullCheck,
    OrderBy,
    Query,
    QueryType,
    StringFilter,
    TimeInterval,
)
from quarry.query.parser import CARD_SOURCE_TABLE
from quarry.types import is_temporal, valid_temporal_unit

logger = logging.getLogger(__name__)

# Cards may use other cards as their source; stop runaway recursion
MAX_CARD_DEPTH = 10


class Resolver:
    """Resolves one query against a metadata provider."""

    def __init__(self, provider: MetadataProvider) -> None:
        self.provider = provider
        self._fields: dict[int, FieldMetadata] = {}
        self._tables: dict[int, TableMetadata] = {}

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def field(self, field_id: int) -> FieldMetadata:
        if field_id not in self._fields:
            try:
                self._fields[field_id] = self.provider.lookup_field(field_id)
            except LookupError as e:
                raise FieldResolutionError(f"Field {field_id} does not exist.", field_id=field_id) from e
        return self._fields[field_id]

    def table(self, table_id: int) -> TableMetadata:
        if table_id not in self._tables:
            try:
                self._tables[table_id] = self.provider.lookup_table(table_id)
            except LookupError as e:
                raise FieldResolutionError(f"Table {table_id} does not exist.", table_id=table_id) from e
        return self._tables[table_id]

    def card(self, card_id: int, depth: int) -> InnerQuery | NativeQuery:
        from quarry.query.normalize import normalize
        from quarry.query.parser import parse

        if depth > MAX_CARD_DEPTH:
            raise InvalidQuery(f"Card {card_id} nests too many saved questions", card_id=card_id)
        lookup = getattr(self.provider, "lookup_card", None)
        if lookup is None:
            raise FieldResolutionError(f"Card {card_id} does not exist.", card_id=card_id)
        card_query = parse(normalize(lookup(card_id)))
        if card_query.type is QueryType.NATIVE:
            return card_query.native
        return self.inner_query(card_query.query, depth + 1)

    # -------------------------------------------------------------------------
    # Fields and Expressions
    # -------------------------------------------------------------------------

    def field_ref(self, ref: FieldRef) -> FieldRef:
        if ref.is_literal:
            metadata = FieldMetadata(id=None, name=str(ref.id_or_name), base_type=ref.base_type or "type/*")
        else:
            metadata = self.field(ref.id_or_name)  # type: ignore[arg-type]
            if ref.source_field is not None:
                self.field(ref.source_field)
        unit = ref.temporal_unit
        if unit is not None and unit != "default":
            effective = metadata.effective_type
            # Untyped literals (e.g. native columns) are assumed to be temporal
            if effective != "type/*" and not (is_temporal(effective) and valid_temporal_unit(effective, unit)):
                raise InvalidQuery(
                    f"Cannot bucket {metadata.name} ({effective}) by {unit}",
                    clause="field",
                    field=metadata.name,
                    temporal_unit=unit,
                )
        return dataclasses.replace(ref, metadata=metadata)

    def expression(self, expr: Any) -> Any:
        if isinstance(expr, FieldRef):
            return self.field_ref(expr)
        if isinstance(expr, Arithmetic):
            return dataclasses.replace(expr, args=tuple(self.expression(a) for a in expr.args))
        return expr

    def filter(self, clause: Filter | None) -> Filter | None:
        if clause is None:
            return None
        if isinstance(clause, Logical):
            return dataclasses.replace(clause, clauses=tuple(self.filter(c) for c in clause.clauses))
        if isinstance(clause, Not):
            return dataclasses.replace(clause, clause=self.filter(clause.clause))
        if isinstance(clause, Compare):
            return dataclasses.replace(
                clause,
                field=self.expression(clause.field),
                values=tuple(self.expression(v) for v in clause.values),
            )
        if isinstance(clause, Between):
            return dataclasses.replace(
                clause,
                field=self.expression(clause.field),
                min=self.expression(clause.min),
                max=self.expression(clause.max),
            )
        if isinstance(clause, (NullCheck, StringFilter)):
            return dataclasses.replace(clause, field=self.expression(clause.field))
        if isinstance(clause, TimeInterval):
            field = self.field_ref(clause.field)
            if field.effective_type != "type/*" and not is_temporal(field.effective_type):
                raise InvalidQuery(
                    f"time-interval requires a temporal field, got {field.name} ({field.effective_type})",
                    clause="time-interval",
                    field=field.name,
                )
            return dataclasses.replace(clause, field=field)
        return clause

    def aggregation(self, agg: Aggregation) -> Aggregation:
        return dataclasses.replace(
            agg,
            arg=self.expression(agg.arg) if agg.arg is not None else None,
            predicate=self.filter(agg.predicate),
        )

    # -------------------------------------------------------------------------
    # Query Structure
    # -------------------------------------------------------------------------

    def _source(self, source_table: Any, source_query: Any, depth: int) -> dict[str, Any]:
        if isinstance(source_table, str):
            card_id = int(CARD_SOURCE_TABLE.match(source_table).group(1))
            return {"source_table": None, "source_query": self.card(card_id, depth), "table": None}
        if source_table is not None:
            return {"source_table": source_table, "source_query": source_query, "table": self.table(source_table)}
        if isinstance(source_query, InnerQuery):
            source_query = self.inner_query(source_query, depth)
        return {"source_table": None, "source_query": source_query, "table": None}

    def join(self, join: Join, depth: int) -> Join:
        source = self._source(join.source_table, join.source_query, depth)
        return dataclasses.replace(
            join,
            condition=self.filter(join.condition),
            fields=join.fields if isinstance(join.fields, str) else tuple(self.field_ref(f) for f in join.fields),
            **source,
        )

    def inner_query(self, inner: InnerQuery, depth: int = 0) -> InnerQuery:
        source = self._source(inner.source_table, inner.source_query, depth)
        return dataclasses.replace(
            inner,
            joins=tuple(self.join(j, depth) for j in inner.joins),
            expressions=tuple((name, self.expression(e)) for name, e in inner.expressions),
            fields=tuple(self.expression(f) for f in inner.fields),
            breakout=tuple(self.expression(b) for b in inner.breakout),
            aggregation=tuple(self.aggregation(a) for a in inner.aggregation),
            filter=self.filter(inner.filter),
            order_by=tuple(OrderBy(o.direction, self.expression(o.ref)) for o in inner.order_by),
            **source,
        )

    def native(self, native: NativeQuery) -> NativeQuery:
        tags = []
        for name, tag in native.template_tags:
            if tag.dimension is not None:
                tag = dataclasses.replace(tag, dimension=self.field_ref(tag.dimension))
            tags.append((name, tag))
        return dataclasses.replace(native, template_tags=tuple(tags))


def resolve(query: Query, provider: MetadataProvider) -> Query:
    """Return a copy of `query` with field and table metadata attached.

    Raises:
        FieldResolutionError: If a referenced field, table or card does not exist.
        InvalidQuery: If a temporal unit is applied to a non-temporal field.
    """
    resolver = Resolver(provider)
    if query.type is QueryType.NATIVE:
        return dataclasses.replace(query, native=resolver.native(query.native))
    resolved = dataclasses.replace(query, query=resolver.inner_query(query.query))
    logger.debug(f"Resolved {len(resolver._fields)} fields and {len(resolver._tables)} tables")
    return resolved

