"""Execution engine - run a native query on a checked-out connection.

Results are reduced as they stream: `rff(metadata)` is called once, before any
row, and returns a reducer whose `step(row)` is called per row and whose
`finish()` produces the result.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

from quarry.driver.base import execute_reducible_query, set_isolation_level
from quarry.processor.context import ExecutionContext, ExecutionState
from quarry.query.ast import NativeQuery

logger = logging.getLogger(__name__)


class RowReducer(Protocol):
    def step(self, row: tuple[Any, ...]) -> None: ...

    def finish(self) -> dict[str, Any]: ...


Rff = Callable[[list[dict[str, Any]]], RowReducer]


class MaterializingReducer:
    """Default reducer: collects every row into a result dict."""

    def __init__(self, metadata: list[dict[str, Any]]) -> None:
        self.metadata = metadata
        self.rows: list[list[Any]] = []

    def step(self, row: tuple[Any, ...]) -> None:
        self.rows.append(list(row))

    def finish(self) -> dict[str, Any]:
        return {
            "data": {"cols": self.metadata, "rows": self.rows},
            "row_count": len(self.rows),
        }


def default_rff(metadata: list[dict[str, Any]]) -> RowReducer:
    return MaterializingReducer(metadata)


def execute(
    driver: str,
    native: NativeQuery,
    context: ExecutionContext,
    connection: Any,
    rff: Rff | None = None,
) -> dict[str, Any]:
    """Run `native` with `driver` on `connection`, reducing rows with `rff`.

    A timer cancels the context after `context.timeout_seconds`; the driver's
    cancel hook interrupts the statement and `QueryTimeout` is raised.

    Raises:
        QueryTimeout: If the query ran past its timeout.
        QueryCancelled: If the context was cancelled.
        DriverExecutionError: If the database rejected the query.
    """
    rff = rff or default_rff
    timer = None
    if context.timeout_seconds:
        timer = threading.Timer(context.timeout_seconds, context.cancel, kwargs={"timed_out": True})
        timer.daemon = True
        timer.start()

    context.transition(ExecutionState.EXECUTING)
    try:
        set_isolation_level(driver, connection)
        context.transition(ExecutionState.STREAMING)
        result = execute_reducible_query(driver, native, context, rff, connection)
    finally:
        if timer is not None:
            timer.cancel()

    logger.debug(f"Query returned {context.row_count} rows in {context.elapsed_ms}ms")
    return result
