"""Tests for dialect overrides: Oracle, SQL Server, DuckDB and Postgres."""

from __future__ import annotations

import pytest

from quarry.driver import the_driver
from quarry.driver.base import escape_alias, mbql_to_native, supports
from quarry.metadata import InMemoryMetadataProvider
from quarry.query import normalize, parse, resolve

ID, NAME, PRICE, CREATED_AT = 10, 11, 12, 13


def compile_sql(driver: str, inner: dict, provider: InMemoryMetadataProvider):
    the_driver(driver)
    query = resolve(parse(normalize({"database": 1, "type": "query", "query": inner})), provider)
    native = mbql_to_native(driver, query)
    return native.query, list(native.params)


class TestOracle:
    """ROWNUM pagination, TRUNC buckets and empty strings as NULL."""

    def test_limit_wraps_query(self, provider: InMemoryMetadataProvider) -> None:
        sql, _ = compile_sql("oracle", {"source-table": 1, "aggregation": [["count"]], "limit": 10}, provider)
        assert sql == 'SELECT * FROM (SELECT COUNT(*) AS "count" FROM "venues") WHERE ROWNUM <= 10'

    def test_page_double_wrap(self, provider: InMemoryMetadataProvider) -> None:
        sql, _ = compile_sql("oracle", {"source-table": 1, "fields": [NAME], "page": {"page": 2, "items": 5}}, provider)
        assert sql == (
            'SELECT * FROM (SELECT "__table__".*, ROWNUM AS "__rownum__" '
            'FROM (SELECT "venues"."name" AS "name" FROM "venues") "__table__" WHERE ROWNUM <= 10) '
            'WHERE "__rownum__" > 5'
        )

    def test_first_page_uses_same_shape(self, provider: InMemoryMetadataProvider) -> None:
        sql, _ = compile_sql("oracle", {"source-table": 1, "page": {"page": 1, "items": 5}}, provider)
        assert sql.endswith('WHERE ROWNUM <= 5) WHERE "__rownum__" > 0')

    def test_numbered_placeholders(self, provider: InMemoryMetadataProvider) -> None:
        sql, params = compile_sql("oracle", {"source-table": 1, "filter": ["between", PRICE, 1, 2]}, provider)
        assert sql.endswith('WHERE "venues"."price" BETWEEN :1 AND :2')
        assert params == [1, 2]

    def test_empty_string_is_null(self, provider: InMemoryMetadataProvider) -> None:
        sql, params = compile_sql("oracle", {"source-table": 1, "filter": ["=", NAME, ""]}, provider)
        assert sql.endswith('WHERE "venues"."name" IS NULL')
        assert params == []

    def test_empty_string_among_values(self, provider: InMemoryMetadataProvider) -> None:
        sql, params = compile_sql("oracle", {"source-table": 1, "filter": ["=", NAME, "", "Fred 62"]}, provider)
        assert sql.endswith('WHERE "venues"."name" IS NULL OR "venues"."name" = :1')
        assert params == ["Fred 62"]

    def test_is_empty(self, provider: InMemoryMetadataProvider) -> None:
        sql, _ = compile_sql("oracle", {"source-table": 1, "filter": ["not-empty", NAME]}, provider)
        assert sql.endswith('WHERE "venues"."name" IS NOT NULL')

    def test_month_bucket(self, provider: InMemoryMetadataProvider) -> None:
        sql, _ = compile_sql(
            "oracle", {"source-table": 1, "breakout": [["field", CREATED_AT, {"temporal-unit": "month"}]]}, provider
        )
        assert sql == (
            'SELECT TRUNC("venues"."created_at", \'MONTH\') AS "created_at" FROM "venues" '
            'GROUP BY TRUNC("venues"."created_at", \'MONTH\')'
        )

    def test_alias_limited_to_30_bytes(self) -> None:
        the_driver("oracle")
        alias = escape_alias("oracle", "a_really_long_aggregation_name_for_oracle")
        assert len(alias.encode("utf-8")) == 30

    def test_alias_quotes_replaced(self) -> None:
        the_driver("oracle")
        assert escape_alias("oracle", 'say "hi"') == "say _hi_"


class TestSqlServer:
    """TOP, OFFSET/FETCH and optimized date buckets."""

    def test_limit_uses_top(self, provider: InMemoryMetadataProvider) -> None:
        sql, _ = compile_sql("sqlserver", {"source-table": 1, "aggregation": [["count"]], "limit": 10}, provider)
        assert sql == "SELECT TOP 10 COUNT(*) AS [count] FROM [venues]"

    def test_unordered_page(self, provider: InMemoryMetadataProvider) -> None:
        inner = {"source-table": 1, "fields": [NAME], "page": {"page": 2, "items": 5}}
        sql, _ = compile_sql("sqlserver", inner, provider)
        assert sql == (
            "SELECT [venues].[name] AS [name] FROM [venues] "
            "ORDER BY (SELECT NULL) ASC OFFSET 5 ROWS FETCH NEXT 5 ROWS ONLY"
        )

    def test_ordered_page_with_limit(self, provider: InMemoryMetadataProvider) -> None:
        sql, _ = compile_sql(
            "sqlserver",
            {
                "source-table": 1,
                "fields": [NAME],
                "order-by": [["desc", NAME]],
                "page": {"page": 1, "items": 5},
                "limit": 2,
            },
            provider,
        )
        assert sql.endswith("ORDER BY [venues].[name] DESC OFFSET 0 ROWS FETCH NEXT 2 ROWS ONLY")

    def test_month_groups_by_parts(self, provider: InMemoryMetadataProvider) -> None:
        sql, _ = compile_sql(
            "sqlserver",
            {
                "source-table": 1,
                "breakout": [["field", CREATED_AT, {"temporal-unit": "month"}]],
                "aggregation": [["count"]],
                "order-by": [["asc", ["field", CREATED_AT, {"temporal-unit": "month"}]]],
            },
            provider,
        )
        col = "[venues].[created_at]"
        assert sql == (
            f"SELECT DateFromParts(YEAR({col}), MONTH({col}), 1) AS [created_at], COUNT(*) AS [count] "
            f"FROM [venues] GROUP BY YEAR({col}), MONTH({col}) ORDER BY YEAR({col}) ASC, MONTH({col}) ASC"
        )

    def test_stddev(self, provider: InMemoryMetadataProvider) -> None:
        sql, _ = compile_sql("sqlserver", {"source-table": 1, "aggregation": [["stddev", PRICE]]}, provider)
        assert sql == "SELECT STDEVP([venues].[price]) AS [stddev] FROM [venues]"


class TestDuckDBAndPostgres:
    """Drivers that keep ANSI pagination."""

    @pytest.mark.parametrize("driver", ["duckdb", "postgres"])
    def test_limit(self, driver: str, provider: InMemoryMetadataProvider) -> None:
        sql, _ = compile_sql(driver, {"source-table": 1, "fields": [ID], "limit": 3}, provider)
        assert sql == 'SELECT "venues"."id" AS "id" FROM "venues" LIMIT 3'

    def test_postgres_placeholders(self, provider: InMemoryMetadataProvider) -> None:
        sql, params = compile_sql("postgres", {"source-table": 1, "filter": ["=", PRICE, 2]}, provider)
        assert sql.endswith('WHERE "venues"."price" = %s')
        assert params == [2]

    @pytest.mark.parametrize("driver", ["duckdb", "postgres"])
    def test_supports_full_join(self, driver: str) -> None:
        the_driver(driver)
        assert supports(driver, "full-join")
