"""Query processor - the single entry point that runs a query end to end.

    raw -> normalize -> parse -> authorize -> resolve -> compile -> execute

`QueryProcessor.process_query` never raises: any failure along the way is
turned into an error envelope by `quarry.processor.catch_exceptions`.

Example:
    >>> config = QuarryConfig(databases={"1": {"engine": "sqlite", "details": {"db": "app.db"}}})
    >>> qp = QueryProcessor(config, InMemoryMetadataProvider.from_config(config))
    >>> qp.process_query({"database": 1, "type": "native", "native": {"query": "SELECT 1"}})["status"]
    'completed'
"""

from __future__ import annotations

import dataclasses
import hashlib
import importlib
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from quarry.config import QuarryConfig
from quarry.driver import the_driver
from quarry.driver.base import mbql_to_native, substitute_native_parameters
from quarry.errors import ConfigError, PermissionsError, QueryCancelled, QueryTimeout
from quarry.metadata import MetadataProvider
from quarry.processor.catch_exceptions import error_envelope
from quarry.processor.context import ExecutionContext, ExecutionState
from quarry.processor.execute import Rff, execute
from quarry.processor.pool import PoolManager
from quarry.query.ast import NativeQuery, Query, QueryType
from quarry.query.normalize import normalize
from quarry.query.parser import parse
from quarry.query.resolver import resolve

logger = logging.getLogger(__name__)


# =============================================================================
# Collaborators
# =============================================================================


class Authorizer(Protocol):
    """Decides whether a user may run a query."""

    def can_run(self, user: Any, query: Query) -> bool: ...


@dataclass(frozen=True)
class QueryExecution:
    """Audit record written once per processed query."""

    hash: str
    started_at: datetime
    running_time_ms: int
    row_count: int
    status: str
    error: str | None = None
    database_id: int | None = None
    native: dict[str, Any] | None = None


class QueryExecutionRecorder(Protocol):
    def record(self, execution: QueryExecution) -> None: ...


def query_hash(query: Any) -> str:
    """sha256 of the canonical JSON form of `query`."""
    canonical = json.dumps(query, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# Async Handles
# =============================================================================


class QueryHandle:
    """A query submitted with `QueryProcessor.submit`."""

    def __init__(self, future: Future[dict[str, Any]], context: ExecutionContext) -> None:
        self.future = future
        self.context = context

    def cancel(self) -> None:
        """Interrupt the query; its envelope will have status `interrupted`."""
        self.context.cancel()

    def result(self, timeout: float | None = None) -> dict[str, Any]:
        """Wait for the envelope.

        Raises:
            concurrent.futures.TimeoutError: If it is not ready within `timeout`.
        """
        return self.future.result(timeout)

    def done(self) -> bool:
        return self.future.done()


# =============================================================================
# Processor
# =============================================================================


class QueryProcessor:
    """Runs queries against the databases in a `QuarryConfig`.

    Thread-safe: `process_query` may be called from many threads at once;
    each database gets one bounded connection pool.
    """

    def __init__(
        self,
        config: QuarryConfig,
        metadata: MetadataProvider,
        authorizer: Authorizer | None = None,
        recorder: QueryExecutionRecorder | None = None,
        pools: PoolManager | None = None,
    ) -> None:
        self.config = config
        self.metadata = metadata
        self.authorizer = authorizer
        self.recorder = recorder
        self.pools = pools or PoolManager(config)
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._load_plugins()

    def _load_plugins(self) -> None:
        for module in self.config.drivers.plugins:
            try:
                importlib.import_module(module)
            except ImportError as e:
                raise ConfigError(f"Could not import driver plugin {module}: {e}", module=module) from e
            logger.debug(f"Loaded driver plugin {module}")

    def __enter__(self) -> QueryProcessor:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        """Stop worker threads and close every pooled connection."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        self.pools.close()

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def normalize(self, raw: Any) -> dict[str, Any]:
        return normalize(raw)

    def driver_for(self, query: Query) -> str:
        """Name of the driver that runs `query`'s database.

        Raises:
            ConfigError: If the database is not configured.
        """
        database = self.config.database(query.database) if query.database is not None else None
        if database is None:
            raise ConfigError(f"Database {query.database} is not configured", database_id=query.database)
        return the_driver(database.engine, for_query=True)

    def _authorize(self, user: Any, query: Query) -> None:
        if self.authorizer is not None and not self.authorizer.can_run(user, query):
            raise PermissionsError(
                "You do not have permissions to run this query.",
                database_id=query.database,
            )

    def _max_results(self, query: Query) -> int:
        limit = self.config.execution.max_results
        if query.constraints is not None and query.constraints.max_results is not None:
            limit = min(limit, query.constraints.max_results)
        return limit

    def _apply_default_limit(self, query: Query) -> Query:
        """Give structured queries without `limit` or `page` the max-results limit."""
        inner = query.query
        if query.type is not QueryType.QUERY or inner is None:
            return query
        if inner.limit is not None or inner.page is not None:
            return query
        return dataclasses.replace(query, query=dataclasses.replace(inner, limit=self._max_results(query)))

    def preprocess(self, raw: Any, user: Any = None) -> Query:
        """Normalize, parse, authorize and resolve `raw`.

        Raises:
            InvalidQuery: If the query is malformed.
            PermissionsError: If the authorizer rejects the query.
            FieldResolutionError: If a field or table cannot be resolved.
        """
        query = parse(self.normalize(raw))
        self._authorize(user, query)
        query = resolve(query, self.metadata)
        return self._apply_default_limit(query)

    def _compile(self, driver: str, query: Query) -> NativeQuery:
        if query.type is QueryType.QUERY:
            return mbql_to_native(driver, query)
        native = query.native
        if native.template_tags or query.parameters:
            native = substitute_native_parameters(driver, native, query.parameters)
        return native

    def compile(self, raw: Any) -> NativeQuery:
        """The native form `raw` would run as, without executing it."""
        query = self.preprocess(raw)
        return self._compile(self.driver_for(query), query)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def new_context(self) -> ExecutionContext:
        settings = self.config.execution
        return ExecutionContext(
            timeout_seconds=settings.timeout_seconds,
            fetch_size=settings.fetch_size,
        )

    def process_query(
        self,
        raw: Any,
        user: Any = None,
        rff: Rff | None = None,
        context: ExecutionContext | None = None,
    ) -> dict[str, Any]:
        """Run `raw` and return its result envelope. Never raises."""
        context = context or self.new_context()
        started_at = datetime.now(timezone.utc)
        database_id = raw.get("database") if isinstance(raw, dict) else None
        canonical: Any = raw
        native: NativeQuery | None = None

        try:
            context.transition(ExecutionState.COMPILING)
            canonical = self.normalize(raw)
            query = parse(canonical)
            database_id = query.database
            self._authorize(user, query)
            query = self._apply_default_limit(resolve(query, self.metadata))
            driver = self.driver_for(query)
            native = self._compile(driver, query)
            context.check_cancelled()
            if context.max_rows is None:
                context.max_rows = self._max_results(query)

            with self.pools.connection(query.database) as connection:
                result = execute(driver, native, context, connection, rff)
            context.transition(ExecutionState.COMPLETED)
            response = self._completed(result, native, context)
        except Exception as e:
            context.error = context.error or e
            context.transition(_failure_state(e))
            logger.error(f"Error processing query: {e}")
            response = error_envelope(raw, e)
            if native is not None:
                response["native"] = native.to_dict()

        self._record(
            QueryExecution(
                hash=query_hash(canonical),
                started_at=started_at,
                running_time_ms=context.elapsed_ms,
                row_count=response.get("row_count", 0),
                status=response["status"],
                error=response.get("error") if response["status"] != "completed" else None,
                database_id=database_id,
                native=native.to_dict() if native is not None else None,
            )
        )
        return response

    def _completed(self, result: dict[str, Any], native: NativeQuery, context: ExecutionContext) -> dict[str, Any]:
        response = dict(result)
        data = dict(response.get("data") or {"cols": context.metadata or [], "rows": []})
        data["native_form"] = native.to_dict()
        response["status"] = "completed"
        response["data"] = data
        response.setdefault("row_count", context.row_count)
        response["running_time"] = context.elapsed_ms
        return response

    def _record(self, execution: QueryExecution) -> None:
        if self.recorder is None:
            return
        try:
            self.recorder.record(execution)
        except Exception as e:
            logger.warning(f"Could not record query execution {execution.hash[:12]}: {e}")

    def submit(self, raw: Any, user: Any = None, rff: Rff | None = None) -> QueryHandle:
        """Run `raw` on a worker thread."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.execution.max_workers,
                    thread_name_prefix="quarry-query",
                )
            executor = self._executor
        context = self.new_context()
        future = executor.submit(self.process_query, raw, user, rff, context)
        return QueryHandle(future, context)


def _failure_state(e: BaseException) -> ExecutionState:
    if isinstance(e, QueryTimeout):
        return ExecutionState.TIMED_OUT
    if isinstance(e, QueryCancelled):
        return ExecutionState.CANCELLED
    return ExecutionState.FAILED


__all__ = [
    "Authorizer",
    "ExecutionContext",
    "QueryExecution",
    "QueryExecutionRecorder",
    "QueryHandle",
    "QueryProcessor",
    "query_hash",
]
