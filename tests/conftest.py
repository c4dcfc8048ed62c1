"""Shared fixtures: a small venues schema in metadata and in real databases."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import duckdb
import pytest

from quarry.config import QuarryConfig
from quarry.metadata import FieldMetadata, InMemoryMetadataProvider, TableMetadata

VENUES = [
    (1, "Red Medicine", 3, "2014-04-07 19:30:00"),
    (2, "Stout Burgers & Beers", 2, "2014-09-18 12:15:00"),
    (3, "The Apple Pan", 2, "2014-09-20 08:00:00"),
    (4, "Wurstkuche", 2, "2014-10-02 17:45:00"),
    (5, "Brite Spot Family Restaurant", 2, "2015-01-12 09:20:00"),
    (6, "The 101 Coffee Shop", 2, "2015-03-30 07:10:00"),
    (7, "Don Day Korean Restaurant", 2, "2015-05-01 11:00:00"),
    (8, "25°", 2, "2015-06-14 18:30:00"),
    (9, "Krua Siri", 1, "2015-08-02 12:00:00"),
    (10, "Fred 62", 2, "2015-11-20 23:05:00"),
]

VENUES_TABLE_ID = 1
ID, NAME, PRICE, CREATED_AT = 10, 11, 12, 13


@pytest.fixture
def provider() -> InMemoryMetadataProvider:
    """Metadata for database 1 with a single `venues` table."""
    provider = InMemoryMetadataProvider()
    provider.add_table(
        TableMetadata(id=VENUES_TABLE_ID, name="venues", db_id=1),
        [
            FieldMetadata(id=ID, name="id", base_type="type/Integer", table_id=VENUES_TABLE_ID),
            FieldMetadata(id=NAME, name="name", base_type="type/Text", table_id=VENUES_TABLE_ID),
            FieldMetadata(id=PRICE, name="price", base_type="type/Integer", table_id=VENUES_TABLE_ID),
            FieldMetadata(id=CREATED_AT, name="created_at", base_type="type/DateTime", table_id=VENUES_TABLE_ID),
        ],
    )
    return provider


@pytest.fixture
def sqlite_path(tmp_path: Path) -> Path:
    """A SQLite database file holding the venues table."""
    path = tmp_path / "venues.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE venues (id INTEGER PRIMARY KEY, name TEXT, price INTEGER, created_at DATETIME)")
    conn.executemany("INSERT INTO venues VALUES (?, ?, ?, ?)", VENUES)
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def sqlite_config(sqlite_path: Path) -> QuarryConfig:
    return QuarryConfig(databases={"1": {"engine": "sqlite", "details": {"db": str(sqlite_path)}}})


@pytest.fixture
def duckdb_path(tmp_path: Path) -> Path:
    """A DuckDB database file holding the venues table."""
    path = tmp_path / "venues.duckdb"
    conn = duckdb.connect(str(path))
    conn.execute("CREATE TABLE venues (id INTEGER PRIMARY KEY, name VARCHAR, price INTEGER, created_at TIMESTAMP)")
    conn.executemany("INSERT INTO venues VALUES (?, ?, ?, CAST(? AS TIMESTAMP))", [list(v) for v in VENUES])
    conn.close()
    return path


@pytest.fixture
def duckdb_config(duckdb_path: Path) -> QuarryConfig:
    return QuarryConfig(databases={"1": {"engine": "duckdb", "details": {"db": str(duckdb_path)}}})
