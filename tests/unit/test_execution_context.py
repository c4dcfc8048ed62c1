"""Tests for execution state and cancellation."""

from __future__ import annotations

import pytest

from quarry.errors import QueryCancelled, QueryTimeout
from quarry.processor.context import ExecutionContext, ExecutionState


class TestTransitions:
    def test_forward(self) -> None:
        ctx = ExecutionContext()
        assert ctx.transition(ExecutionState.COMPILING)
        assert ctx.transition(ExecutionState.EXECUTING)
        assert ctx.transition(ExecutionState.STREAMING)
        assert ctx.transition(ExecutionState.COMPLETED)
        assert ctx.is_terminal

    def test_backward_is_ignored(self) -> None:
        ctx = ExecutionContext()
        ctx.transition(ExecutionState.EXECUTING)
        assert not ctx.transition(ExecutionState.COMPILING)
        assert ctx.state is ExecutionState.EXECUTING

    def test_terminal_is_final(self) -> None:
        ctx = ExecutionContext()
        ctx.transition(ExecutionState.FAILED)
        assert not ctx.transition(ExecutionState.COMPLETED)
        assert ctx.state is ExecutionState.FAILED


class TestCancellation:
    """Cancel hooks and the errors raised after cancellation."""

    def test_hooks_run_once(self) -> None:
        ctx = ExecutionContext()
        calls = []
        ctx.add_cancel_hook(lambda: calls.append("a"))
        ctx.cancel()
        ctx.cancel()
        assert calls == ["a"]
        assert ctx.is_cancelled

    def test_hook_added_after_cancel_runs_immediately(self) -> None:
        ctx = ExecutionContext()
        ctx.cancel()
        calls = []
        ctx.add_cancel_hook(lambda: calls.append("late"))
        assert calls == ["late"]

    def test_removed_hook_does_not_run(self) -> None:
        ctx = ExecutionContext()
        calls = []
        hook = lambda: calls.append("x")  # noqa: E731
        ctx.add_cancel_hook(hook)
        ctx.remove_cancel_hook(hook)
        ctx.cancel()
        assert calls == []

    def test_failing_hook_does_not_stop_others(self) -> None:
        ctx = ExecutionContext()
        calls = []

        def broken() -> None:
            raise RuntimeError("already closed")

        ctx.add_cancel_hook(broken)
        ctx.add_cancel_hook(lambda: calls.append("ok"))
        ctx.cancel()
        assert calls == ["ok"]

    def test_check_cancelled(self) -> None:
        ctx = ExecutionContext()
        ctx.check_cancelled()
        ctx.cancel()
        with pytest.raises(QueryCancelled):
            ctx.check_cancelled()

    def test_timeout_error(self) -> None:
        ctx = ExecutionContext(timeout_seconds=2)
        ctx.cancel(timed_out=True)
        with pytest.raises(QueryTimeout, match="2 seconds"):
            ctx.check_cancelled()

    def test_raisef_records_error(self) -> None:
        ctx = ExecutionContext()
        error = ValueError("bad row")
        with pytest.raises(ValueError):
            ctx.raisef(error)
        assert ctx.error is error
