"""Tests for compiling structured queries to MongoDB aggregation pipelines."""

from __future__ import annotations

import pytest

from quarry.driver import the_driver
from quarry.driver.base import mbql_to_native, substitute_native_parameters
from quarry.errors import InvalidQuery, UnsupportedOperation
from quarry.metadata import InMemoryMetadataProvider
from quarry.query import normalize, parse, resolve

ID, NAME, PRICE, CREATED_AT = 10, 11, 12, 13


@pytest.fixture(autouse=True)
def mongo_driver() -> None:
    the_driver("mongo")


def pipeline_for(inner: dict, provider: InMemoryMetadataProvider):
    query = resolve(parse(normalize({"database": 1, "type": "query", "query": inner})), provider)
    return mbql_to_native("mongo", query)


class TestPipeline:
    """Stage layout of compiled pipelines."""

    def test_count_by_breakout(self, provider: InMemoryMetadataProvider) -> None:
        native = pipeline_for({"source-table": 1, "breakout": [NAME], "aggregation": [["count"]]}, provider)
        assert native.collection == "venues"
        assert native.query == [
            {"$group": {"_id": {"name": "$name"}, "count": {"$sum": 1}}},
            {"$project": {"_id": False, "name": "$_id.name", "count": True}},
        ]
        assert native.columns == ("name", "count")

    def test_stage_order(self, provider: InMemoryMetadataProvider) -> None:
        native = pipeline_for(
            {
                "source-table": 1,
                "fields": [NAME, PRICE],
                "filter": [">", PRICE, 1],
                "order-by": [["desc", PRICE]],
                "page": {"page": 3, "items": 10},
            },
            provider,
        )
        assert native.query == [
            {"$match": {"price": {"$gt": 1}}},
            {"$project": {"_id": False, "name": "$name", "price": "$price"}},
            {"$sort": {"price": -1}},
            {"$skip": 20},
            {"$limit": 10},
        ]

    def test_limit_caps_page(self, provider: InMemoryMetadataProvider) -> None:
        native = pipeline_for({"source-table": 1, "page": {"page": 1, "items": 10}, "limit": 4}, provider)
        assert native.query == [{"$limit": 4}]

    def test_sort_by_aggregation(self, provider: InMemoryMetadataProvider) -> None:
        native = pipeline_for(
            {
                "source-table": 1,
                "breakout": [PRICE],
                "aggregation": [["sum", PRICE]],
                "order-by": [["desc", ["aggregation", 0]]],
            },
            provider,
        )
        assert native.query[-1] == {"$sort": {"sum": -1}}

    def test_month_bucket(self, provider: InMemoryMetadataProvider) -> None:
        native = pipeline_for(
            {"source-table": 1, "breakout": [["field", CREATED_AT, {"temporal-unit": "month"}]]}, provider
        )
        group = native.query[0]["$group"]
        assert group["_id"] == {"created_at": {"$dateTrunc": {"date": "$created_at", "unit": "month"}}}

    def test_distinct_projects_set_size(self, provider: InMemoryMetadataProvider) -> None:
        native = pipeline_for({"source-table": 1, "aggregation": [["distinct", NAME]]}, provider)
        assert native.query == [
            {"$group": {"_id": None, "count": {"$addToSet": "$name"}}},
            {"$project": {"_id": False, "count": {"$size": "$count"}}},
        ]


class TestFilters:
    """Filters become $match documents."""

    def test_equals_several_values(self, provider: InMemoryMetadataProvider) -> None:
        native = pipeline_for({"source-table": 1, "filter": ["=", PRICE, 1, 2]}, provider)
        assert native.query == [{"$match": {"price": {"$in": [1, 2]}}}]

    def test_case_insensitive_contains(self, provider: InMemoryMetadataProvider) -> None:
        native = pipeline_for(
            {"source-table": 1, "filter": ["contains", NAME, "bar", {"case-sensitive": False}]}, provider
        )
        assert native.query == [{"$match": {"name": {"$regex": "bar", "$options": "i"}}}]

    def test_starts_with_escapes_pattern(self, provider: InMemoryMetadataProvider) -> None:
        native = pipeline_for({"source-table": 1, "filter": ["starts-with", NAME, "a.b"]}, provider)
        assert native.query == [{"$match": {"name": {"$regex": "^a\\.b"}}}]

    def test_compound(self, provider: InMemoryMetadataProvider) -> None:
        native = pipeline_for(
            {"source-table": 1, "filter": ["and", ["not-null", NAME], ["between", PRICE, 1, 3]]}, provider
        )
        assert native.query == [
            {"$match": {"$and": [{"name": {"$ne": None}}, {"price": {"$gte": 1, "$lte": 3}}]}}
        ]


class TestUnsupported:
    """Features without a pipeline equivalent."""

    def test_nested_query(self, provider: InMemoryMetadataProvider) -> None:
        with pytest.raises(UnsupportedOperation) as exc_info:
            pipeline_for({"source-query": {"source-table": 1}}, provider)
        assert exc_info.value.driver == "mongo"

    def test_join(self, provider: InMemoryMetadataProvider) -> None:
        join = {"alias": "v", "source-table": 1, "condition": ["=", ID, ["field", ID, {"join-alias": "v"}]]}
        with pytest.raises(UnsupportedOperation, match="joins"):
            pipeline_for({"source-table": 1, "joins": [join]}, provider)

    def test_order_by_unselected_field_with_breakout(self, provider: InMemoryMetadataProvider) -> None:
        with pytest.raises(InvalidQuery, match="order-by"):
            pipeline_for(
                {"source-table": 1, "breakout": [NAME], "aggregation": [["count"]], "order-by": [["asc", PRICE]]},
                provider,
            )


class TestNativeParameters:
    """Template tags in JSON pipelines."""

    def test_variable_is_json_encoded(self) -> None:
        raw = {
            "database": 1,
            "native": {
                "query": '[{"$match": {"name": {{name}}}}]',
                "collection": "venues",
                "template-tags": {"name": {"type": "text"}},
            },
            "parameters": [{"type": "category", "target": ["variable", ["template-tag", "name"]], "value": "Fred"}],
        }
        query = parse(normalize(raw))
        native = substitute_native_parameters("mongo", query.native, query.parameters)
        assert native.query == [{"$match": {"name": "Fred"}}]
        assert native.collection == "venues"

    def test_invalid_json(self) -> None:
        query = parse(normalize({"database": 1, "native": {"query": "[{", "collection": "venues"}}))
        with pytest.raises(InvalidQuery, match="not valid JSON"):
            substitute_native_parameters("mongo", query.native, query.parameters)
