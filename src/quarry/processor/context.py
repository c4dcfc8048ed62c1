"""Execution context - state, cancellation and limits for one running query."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from quarry.errors import QueryCancelled, QueryTimeout

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    PENDING = "pending"
    COMPILING = "compiling"
    EXECUTING = "executing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed-out"


TERMINAL_STATES = frozenset(
    {
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.CANCELLED,
        ExecutionState.TIMED_OUT,
    }
)

# Legal forward transitions; anything else is ignored
TRANSITIONS = {
    ExecutionState.PENDING: {ExecutionState.COMPILING, ExecutionState.EXECUTING},
    ExecutionState.COMPILING: {ExecutionState.EXECUTING},
    ExecutionState.EXECUTING: {ExecutionState.STREAMING},
    ExecutionState.STREAMING: set(),
}


class ExecutionContext:
    """Per-execution state shared between the processor, the driver and cancel callers.

    `cancel()` may be called from any thread. It sets the cancellation event
    and runs every registered cancel hook once; drivers register hooks that
    interrupt the statement currently running on their connection.
    """

    def __init__(
        self,
        timeout_seconds: float | None = None,
        max_rows: int | None = None,
        fetch_size: int = 500,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_rows = max_rows
        self.fetch_size = fetch_size
        self.started_at = time.monotonic()
        self.state = ExecutionState.PENDING
        self.timed_out = False
        self.error: BaseException | None = None
        self.metadata: list[dict[str, Any]] | None = None
        self.row_count = 0
        self._cancelled = threading.Event()
        self._hooks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def transition(self, state: ExecutionState) -> bool:
        """Move to `state` if the transition is legal; returns whether it happened."""
        with self._lock:
            if self.state in TERMINAL_STATES:
                return False
            if state not in TERMINAL_STATES and state not in TRANSITIONS[self.state]:
                logger.debug(f"Ignoring transition {self.state.value} -> {state.value}")
                return False
            self.state = state
            return True

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def add_cancel_hook(self, hook: Callable[[], None]) -> None:
        """Register `hook`; it runs immediately if the query is already cancelled."""
        with self._lock:
            if not self._cancelled.is_set():
                self._hooks.append(hook)
                return
        self._run_hook(hook)

    def remove_cancel_hook(self, hook: Callable[[], None]) -> None:
        with self._lock:
            if hook in self._hooks:
                self._hooks.remove(hook)

    def _run_hook(self, hook: Callable[[], None]) -> None:
        try:
            hook()
        except Exception as e:
            logger.warning(f"Cancel hook failed: {e}")

    def cancel(self, timed_out: bool = False) -> None:
        """Request cancellation and interrupt the running statement."""
        with self._lock:
            if self._cancelled.is_set():
                return
            self.timed_out = timed_out
            self._cancelled.set()
            hooks = list(self._hooks)
            self._hooks.clear()
        logger.info("Query timed out, cancelling" if timed_out else "Query cancelled")
        for hook in hooks:
            self._run_hook(hook)

    def wait_cancelled(self, timeout: float | None = None) -> bool:
        return self._cancelled.wait(timeout)

    def cancellation_error(self) -> QueryCancelled | QueryTimeout:
        if self.timed_out:
            return QueryTimeout(self.timeout_seconds or 0)
        return QueryCancelled()

    def check_cancelled(self) -> None:
        """Raise `QueryTimeout` or `QueryCancelled` if cancellation was requested."""
        if self._cancelled.is_set():
            raise self.cancellation_error()

    def raisef(self, error: BaseException) -> None:
        """Record `error` as the execution failure and raise it."""
        self.error = error
        raise error
