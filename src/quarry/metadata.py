"""Schema metadata: fields, tables, saved questions, and the provider protocol.

The persistent metadata store is an external collaborator. Quarry only needs
read access through `MetadataProvider`; `InMemoryMetadataProvider` is the
implementation used by the CLI and the tests, filled either from the
configuration file or by `sync_database`.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from quarry.errors import FieldResolutionError
from quarry.types import effective_type

if TYPE_CHECKING:
    from quarry.config import QuarryConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldMetadata:
    """A column of a table, or a named column of a native result."""

    id: int | None
    name: str
    base_type: str = "type/*"
    effective_type: str | None = None
    semantic_type: str | None = None
    coercion_strategy: str | None = None
    database_type: str | None = None
    table_id: int | None = None
    display_name: str | None = None

    def __post_init__(self) -> None:
        if self.effective_type is None:
            object.__setattr__(self, "effective_type", effective_type(self.base_type, self.coercion_strategy))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TableMetadata:
    """A table (or collection) in a database."""

    id: int
    name: str
    schema: str | None = None
    db_id: int | None = None
    display_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@runtime_checkable
class MetadataProvider(Protocol):
    """Read-only access to schema metadata."""

    def lookup_field(self, field_id: int) -> FieldMetadata: ...

    def lookup_table(self, table_id: int) -> TableMetadata: ...

    def lookup_card(self, card_id: int) -> dict[str, Any]: ...


class InMemoryMetadataProvider:
    """Dict-backed metadata provider.

    Thread-safe: lookups may happen from many query threads while a sync adds
    tables.
    """

    def __init__(self) -> None:
        self._fields: dict[int, FieldMetadata] = {}
        self._tables: dict[int, TableMetadata] = {}
        self._cards: dict[int, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def add_table(self, table: TableMetadata, fields: list[FieldMetadata] | None = None) -> TableMetadata:
        with self._lock:
            self._tables[table.id] = table
            for f in fields or []:
                self._fields[f.id] = f
        return table

    def add_field(self, field: FieldMetadata) -> FieldMetadata:
        if field.id is None:
            raise ValueError("Fields stored in a provider need an id")
        with self._lock:
            self._fields[field.id] = field
        return field

    def add_card(self, card_id: int, query: dict[str, Any]) -> None:
        """Save a query so other queries can use it as `source-table: "card__<id>"`."""
        with self._lock:
            self._cards[card_id] = query

    def lookup_field(self, field_id: int) -> FieldMetadata:
        try:
            return self._fields[field_id]
        except KeyError:
            raise FieldResolutionError(f"Field {field_id} does not exist.", field_id=field_id) from None

    def lookup_table(self, table_id: int) -> TableMetadata:
        try:
            return self._tables[table_id]
        except KeyError:
            raise FieldResolutionError(f"Table {table_id} does not exist.", table_id=table_id) from None

    def lookup_card(self, card_id: int) -> dict[str, Any]:
        try:
            return self._cards[card_id]
        except KeyError:
            raise FieldResolutionError(f"Card {card_id} does not exist.", card_id=card_id) from None

    def tables(self, db_id: int | None = None) -> list[TableMetadata]:
        with self._lock:
            tables = list(self._tables.values())
        return [t for t in tables if db_id is None or t.db_id == db_id]

    def fields(self, table_id: int) -> list[FieldMetadata]:
        with self._lock:
            return [f for f in self._fields.values() if f.table_id == table_id]

    def next_table_id(self) -> int:
        with self._lock:
            return max(self._tables, default=0) + 1

    def next_field_id(self) -> int:
        with self._lock:
            return max(self._fields, default=0) + 1

    @classmethod
    def from_config(cls, config: QuarryConfig) -> InMemoryMetadataProvider:
        """Build a provider from the tables declared in the configuration."""
        provider = cls()
        for db_id, database in config.databases.items():
            for table in database.tables:
                provider.add_table(
                    TableMetadata(
                        id=table.id,
                        name=table.name,
                        schema=table.schema_name,
                        db_id=int(db_id),
                    ),
                    [
                        FieldMetadata(
                            id=f.id,
                            name=f.name,
                            base_type=f.base_type,
                            effective_type=f.effective_type,
                            semantic_type=f.semantic_type,
                            coercion_strategy=f.coercion_strategy,
                            database_type=f.database_type,
                            table_id=table.id,
                        )
                        for f in table.fields
                    ],
                )
        return provider


def sync_database(
    driver: str,
    connection: Any,
    provider: InMemoryMetadataProvider,
    db_id: int,
    details: dict[str, Any] | None = None,
) -> list[TableMetadata]:
    """Introspect a live database and add its tables and fields to `provider`.

    Tables already known to the provider (same schema and name) keep their ids.

    Returns:
        The tables found, in the order the driver described them.
    """
    from quarry.driver import the_driver
    from quarry.driver.base import describe_database, describe_table

    the_driver(driver)
    known = {(t.schema, t.name): t for t in provider.tables(db_id)}
    synced = []

    for description in describe_database(driver, connection, details or {}):
        key = (description.get("schema"), description["name"])
        table = known.get(key) or TableMetadata(
            id=provider.next_table_id(),
            name=description["name"],
            schema=description.get("schema"),
            db_id=db_id,
        )
        existing = {f.name: f for f in provider.fields(table.id)}
        fields = []
        for column in describe_table(driver, connection, table):
            previous = existing.get(column["name"])
            fields.append(
                FieldMetadata(
                    id=previous.id if previous else provider.next_field_id() + len(fields),
                    name=column["name"],
                    base_type=column.get("base_type", "type/*"),
                    database_type=column.get("database_type"),
                    semantic_type=previous.semantic_type if previous else None,
                    coercion_strategy=previous.coercion_strategy if previous else None,
                    table_id=table.id,
                )
            )
        provider.add_table(table, fields)
        synced.append(table)
        logger.debug(f"Synced table {table.schema}.{table.name} ({len(fields)} fields)")

    logger.info(f"Synced {len(synced)} tables for database {db_id}")
    return synced
