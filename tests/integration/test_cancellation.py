"""Cancelling and timing out long-running queries on SQLite.

The recursive CTE below never terminates on its own; only an interrupt stops it.
"""

from __future__ import annotations

import time

import pytest

from quarry.config import QuarryConfig
from quarry.metadata import InMemoryMetadataProvider
from quarry.processor import QueryProcessor

pytestmark = pytest.mark.integration

ENDLESS = {
    "database": 1,
    "native": {"query": "WITH RECURSIVE r(i) AS (SELECT 1 UNION ALL SELECT i + 1 FROM r) SELECT COUNT(*) FROM r"},
}


def with_execution(config: QuarryConfig, **settings) -> QuarryConfig:
    return config.model_copy(update={"execution": config.execution.model_copy(update=settings)})


class TestCancel:
    def test_cancel_submitted_query(self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider) -> None:
        with QueryProcessor(sqlite_config, provider) as qp:
            handle = qp.submit(ENDLESS)
            time.sleep(0.2)
            handle.cancel()
            response = handle.result(timeout=10)
        assert response["status"] == "interrupted"
        assert handle.done()

    def test_repeated_cancels_leak_nothing(
        self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider
    ) -> None:
        with QueryProcessor(sqlite_config, provider) as qp:
            for _ in range(3):
                handle = qp.submit(ENDLESS)
                time.sleep(0.1)
                handle.cancel()
                assert handle.result(timeout=10)["status"] == "interrupted"
            pool = qp.pools.pool(1)
            assert pool.checked_out == 0
            assert pool.size <= 1

            # The pool is still usable afterwards
            response = qp.process_query({"database": 1, "native": {"query": "SELECT COUNT(*) FROM venues"}})
            assert response["data"]["rows"] == [[10]]

    def test_cancel_before_start(self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider) -> None:
        with QueryProcessor(sqlite_config, provider) as qp:
            context = qp.new_context()
            context.cancel()
            response = qp.process_query(ENDLESS, context=context)
        assert response["status"] == "interrupted"


class TestTimeout:
    def test_timed_out_query_fails(self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider) -> None:
        config = with_execution(sqlite_config, timeout_seconds=0.3)
        started = time.monotonic()
        with QueryProcessor(config, provider) as qp:
            response = qp.process_query(ENDLESS)
            assert qp.pools.pool(1).checked_out == 0
        assert time.monotonic() - started < 10
        assert response["status"] == "failed"
        assert response["error_type"] == "timed-out"
        assert response["error"] == "Timed out after 0.3 seconds."

    def test_fast_query_unaffected(self, sqlite_config: QuarryConfig, provider: InMemoryMetadataProvider) -> None:
        config = with_execution(sqlite_config, timeout_seconds=5)
        with QueryProcessor(config, provider) as qp:
            response = qp.process_query({"database": 1, "native": {"query": "SELECT 1"}})
        assert response["status"] == "completed"
