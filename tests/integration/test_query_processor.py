"""End-to-end query processing against real SQLite and DuckDB databases.

Run with: pytest tests/integration/test_query_processor.py -v
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

import pytest

from quarry.config import QuarryConfig
from quarry.metadata import InMemoryMetadataProvider, sync_database
from quarry.processor import QueryExecution, QueryProcessor, query_hash
from quarry.query import normalize

pytestmark = pytest.mark.integration

ID, NAME, PRICE, CREATED_AT = 10, 11, 12, 13


def structured(inner: dict[str, Any]) -> dict[str, Any]:
    return {"database": 1, "type": "query", "query": inner}


COUNT_BY_PRICE = structured(
    {"source-table": 1, "breakout": [PRICE], "aggregation": [["count"]], "order-by": [["asc", PRICE]]}
)

MONTHLY = structured(
    {
        "source-table": 1,
        "breakout": [["field", CREATED_AT, {"temporal-unit": "month"}]],
        "aggregation": [["count"]],
        "order-by": [["asc", ["field", CREATED_AT, {"temporal-unit": "month"}]]],
    }
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def qp(sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider):
    with QueryProcessor(sqlite_config, provider) as processor:
        yield processor


class RecordingRecorder:
    def __init__(self) -> None:
        self.records: list[QueryExecution] = []

    def record(self, execution: QueryExecution) -> None:
        self.records.append(execution)


class BrokenRecorder:
    def record(self, execution: QueryExecution) -> None:
        raise OSError("audit log unavailable")


class DenyAll:
    def can_run(self, user: Any, query: Any) -> bool:
        return False


def with_execution(config: QuarryConfig, **settings: Any) -> QuarryConfig:
    return config.model_copy(update={"execution": config.execution.model_copy(update=settings)})


def rows(response: dict[str, Any]) -> list[list[Any]]:
    assert response["status"] == "completed", response.get("error")
    return response["data"]["rows"]


# =============================================================================
# SQLite
# =============================================================================


class TestSqliteStructured:
    """Structured queries compiled and run on SQLite."""

    def test_count_by_price(self, qp: QueryProcessor) -> None:
        response = qp.process_query(COUNT_BY_PRICE)
        assert rows(response) == [[1, 1], [2, 8], [3, 1]]
        assert [c["name"] for c in response["data"]["cols"]] == ["price", "count"]
        assert response["row_count"] == 3
        assert response["data"]["native_form"]["query"].startswith('SELECT "venues"."price"')
        assert isinstance(response["running_time"], int)

    def test_case_insensitive_filter(self, qp: QueryProcessor) -> None:
        query = structured(
            {"source-table": 1, "fields": [NAME], "filter": ["contains", NAME, "BURGER", {"case-sensitive": False}]}
        )
        assert rows(qp.process_query(query)) == [["Stout Burgers & Beers"]]

    def test_month_buckets(self, qp: QueryProcessor) -> None:
        result = rows(qp.process_query(MONTHLY))
        assert result[:2] == [["2014-04-01", 1], ["2014-09-01", 2]]
        assert len(result) == 9

    def test_nested_query(self, qp: QueryProcessor) -> None:
        query = structured({"source-query": {"source-table": 1, "filter": ["=", PRICE, 2]}, "aggregation": [["count"]]})
        assert rows(qp.process_query(query)) == [[8]]

    def test_saved_question_source(self, qp: QueryProcessor, provider: InMemoryMetadataProvider) -> None:
        provider.add_card(5, structured({"source-table": 1, "filter": [">", PRICE, 2]}))
        query = structured({"source-table": "card__5", "aggregation": [["count"]]})
        assert rows(qp.process_query(query)) == [[1]]

    def test_page(self, qp: QueryProcessor) -> None:
        inner = {"source-table": 1, "fields": [ID], "order-by": [["asc", ID]], "page": {"page": 2, "items": 3}}
        query = structured(inner)
        assert rows(qp.process_query(query)) == [[4], [5], [6]]

    def test_default_limit(self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider) -> None:
        config = with_execution(sqlite_config, max_results=3)
        with QueryProcessor(config, provider) as qp:
            response = qp.process_query(structured({"source-table": 1, "fields": [ID]}))
        assert response["row_count"] == 3
        assert response["data"]["native_form"]["query"].endswith("LIMIT 3")

    def test_constraints_cap_native_rows(self, qp: QueryProcessor) -> None:
        query = {"database": 1, "native": {"query": "SELECT id FROM venues"}, "constraints": {"max-results": 2}}
        assert len(rows(qp.process_query(query))) == 2


class TestSqliteNative:
    """Native SQL with template tags."""

    def test_parameter(self, qp: QueryProcessor) -> None:
        query = {
            "database": 1,
            "type": "native",
            "native": {
                "query": "SELECT name FROM venues WHERE price = {{price}} ORDER BY id",
                "template-tags": {"price": {"type": "number"}},
            },
            "parameters": [{"type": "number", "target": ["variable", ["template-tag", "price"]], "value": "1"}],
        }
        assert rows(qp.process_query(query)) == [["Krua Siri"]]

    def test_field_filter(self, qp: QueryProcessor) -> None:
        query = {
            "database": 1,
            "native": {
                "query": "SELECT COUNT(*) FROM venues WHERE {{price}}",
                "template-tags": {"price": {"type": "dimension", "dimension": ["field", PRICE, None]}},
            },
            "parameters": [{"type": "category", "target": ["dimension", ["template-tag", "price"]], "value": [1, 3]}],
        }
        assert rows(qp.process_query(query)) == [[2]]

    def test_optional_clause_dropped(self, qp: QueryProcessor) -> None:
        query = {
            "database": 1,
            "native": {
                "query": "SELECT COUNT(*) FROM venues [[WHERE price = {{price}}]]",
                "template-tags": {"price": {"type": "number"}},
            },
        }
        assert rows(qp.process_query(query)) == [[10]]


class TestFailures:
    """Every failure becomes an envelope; nothing is raised."""

    def test_database_error(self, qp: QueryProcessor) -> None:
        raw = {"database": 1, "native": {"query": "SELECT * FROM nowhere"}}
        response = qp.process_query(raw)
        assert response["status"] == "failed"
        assert response["error"] == "no such table: nowhere"
        assert response["error_type"] == "driver"
        assert response["native"] == {"query": "SELECT * FROM nowhere"}
        assert response["json_query"] == raw
        assert response["data"] == {"rows": [], "cols": []}

    def test_error_after_first_batch(self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider) -> None:
        config = with_execution(sqlite_config, fetch_size=2)
        sql = "SELECT id, CASE WHEN id > 5 THEN abs(-9223372036854775808) ELSE id END AS x FROM venues ORDER BY id"
        with QueryProcessor(config, provider) as qp:
            response = qp.process_query({"database": 1, "native": {"query": sql}})
            assert qp.pools.pool(1).checked_out == 0
        assert response["status"] == "failed"
        assert response["error"] == "integer overflow"
        assert response["data"] == {"rows": [], "cols": []}
        assert response["row_count"] == 0

    def test_invalid_query(self, qp: QueryProcessor) -> None:
        response = qp.process_query(structured({"source-table": 1, "filter": ["matches", NAME, "x"]}))
        assert response["status"] == "failed"
        assert response["error_type"] == "invalid-query"
        assert "native" not in response

    def test_missing_parameter(self, qp: QueryProcessor) -> None:
        raw = {
            "database": 1,
            "native": {
                "query": "SELECT * FROM venues WHERE price = {{price}}",
                "template-tags": {"price": {"type": "number", "display-name": "Price", "required": True}},
            },
        }
        response = qp.process_query(raw)
        assert response["error_type"] == "invalid-parameter"
        assert "pick a value for 'Price'" in response["error"]

    def test_unsupported_feature(self, qp: QueryProcessor) -> None:
        response = qp.process_query(structured({"source-table": 1, "aggregation": [["stddev", PRICE]]}))
        assert response["status"] == "failed"
        assert response["error_type"] == "unsupported-feature"

    def test_unconfigured_database(self, qp: QueryProcessor) -> None:
        response = qp.process_query({"database": 99, "native": {"query": "SELECT 1"}})
        assert response["status"] == "failed"
        assert "not configured" in response["error"]

    def test_not_a_query(self, qp: QueryProcessor) -> None:
        response = qp.process_query("SELECT 1")
        assert response["status"] == "failed"

    def test_authorizer_rejects(self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider) -> None:
        with QueryProcessor(sqlite_config, provider, authorizer=DenyAll()) as qp:
            response = qp.process_query(COUNT_BY_PRICE)
        assert response["status"] == "failed"
        assert response["error_type"] == "missing-required-permissions"


class TestRecording:
    """One audit record per processed query."""

    def test_completed_query(self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider) -> None:
        recorder = RecordingRecorder()
        with QueryProcessor(sqlite_config, provider, recorder=recorder) as qp:
            qp.process_query(COUNT_BY_PRICE)
        assert len(recorder.records) == 1
        record = recorder.records[0]
        assert record.status == "completed"
        assert record.row_count == 3
        assert record.database_id == 1
        assert record.error is None
        assert record.hash == query_hash(normalize(COUNT_BY_PRICE))
        assert record.native["query"].startswith("SELECT")

    def test_failed_query(self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider) -> None:
        recorder = RecordingRecorder()
        with QueryProcessor(sqlite_config, provider, recorder=recorder) as qp:
            qp.process_query({"database": 1, "native": {"query": "SELECT * FROM nowhere"}})
        assert [r.status for r in recorder.records] == ["failed"]
        assert recorder.records[0].error == "no such table: nowhere"

    def test_recorder_failure_is_not_fatal(
        self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider
    ) -> None:
        with QueryProcessor(sqlite_config, provider, recorder=BrokenRecorder()) as qp:
            assert qp.process_query(COUNT_BY_PRICE)["status"] == "completed"


class TestSync:
    def test_sqlite_tables_and_fields(self, sqlite_path: Path) -> None:
        provider = InMemoryMetadataProvider()
        conn = sqlite3.connect(sqlite_path)
        try:
            tables = sync_database("sqlite", conn, provider, 1)
        finally:
            conn.close()
        assert [t.name for t in tables] == ["venues"]
        fields = {f.name: f.base_type for f in provider.fields(tables[0].id)}
        assert fields == {
            "id": "type/Integer",
            "name": "type/Text",
            "price": "type/Integer",
            "created_at": "type/DateTime",
        }


# =============================================================================
# DuckDB
# =============================================================================


class TestDuckDB:
    """The same queries on DuckDB."""

    @pytest.fixture
    def duck(self, duckdb_config: QuarryConfig, provider: InMemoryMetadataProvider):
        with QueryProcessor(duckdb_config, provider) as processor:
            yield processor

    def test_count_by_price(self, duck: QueryProcessor) -> None:
        assert rows(duck.process_query(COUNT_BY_PRICE)) == [[1, 1], [2, 8], [3, 1]]

    def test_month_buckets(self, duck: QueryProcessor) -> None:
        result = rows(duck.process_query(MONTHLY))
        assert str(result[0][0]).startswith("2014-04-01")
        assert [r[1] for r in result[:2]] == [1, 2]

    def test_filter_params(self, duck: QueryProcessor) -> None:
        query = structured({"source-table": 1, "aggregation": [["count"]], "filter": ["between", PRICE, 2, 3]})
        assert rows(duck.process_query(query)) == [[9]]

    def test_database_error(self, duck: QueryProcessor) -> None:
        response = duck.process_query({"database": 1, "native": {"query": "SELECT * FROM nowhere"}})
        assert response["status"] == "failed"
        assert response["error_type"] == "driver"
        assert "nowhere" in response["error"]
