"""Tests for the bounded connection pool."""

from __future__ import annotations

import threading
import time

import pytest

from quarry.config import QuarryConfig
from quarry.errors import ConfigError, QueryTimeout
from quarry.processor.pool import ConnectionPool, PoolManager


class FakeConnection:
    def __init__(self, n: int) -> None:
        self.n = n
        self.closed = False

    def close(self) -> None:
        self.closed = True


class Factory:
    def __init__(self) -> None:
        self.created: list[FakeConnection] = []

    def __call__(self) -> FakeConnection:
        conn = FakeConnection(len(self.created))
        self.created.append(conn)
        return conn


class TestConnectionPool:
    """Checkout, reuse and limits."""

    def test_connections_are_reused(self) -> None:
        factory = Factory()
        pool = ConnectionPool(factory, max_connections=2)
        with pool.connection() as first:
            pass
        with pool.connection() as second:
            pass
        assert first is second
        assert len(factory.created) == 1
        assert pool.checked_out == 0

    def test_error_discards_connection(self) -> None:
        factory = Factory()
        pool = ConnectionPool(factory, max_connections=2)
        with pytest.raises(RuntimeError):
            with pool.connection():
                raise RuntimeError("query failed")
        assert factory.created[0].closed
        assert pool.size == 0
        with pool.connection() as conn:
            assert conn.n == 1

    def test_bounded(self) -> None:
        pool = ConnectionPool(Factory(), max_connections=1, acquire_timeout_seconds=0.05)
        conn = pool.acquire()
        with pytest.raises(QueryTimeout):
            pool.acquire()
        pool.release(conn)
        assert pool.acquire() is conn

    def test_waiter_gets_released_connection(self) -> None:
        pool = ConnectionPool(Factory(), max_connections=1, acquire_timeout_seconds=5)
        conn = pool.acquire()
        got = []
        waiter = threading.Thread(target=lambda: got.append(pool.acquire()))
        waiter.start()
        time.sleep(0.05)
        pool.release(conn)
        waiter.join(timeout=5)
        assert got == [conn]

    def test_factory_failure_frees_slot(self) -> None:
        calls = []

        def flaky() -> FakeConnection:
            calls.append(1)
            if len(calls) == 1:
                raise OSError("connection refused")
            return FakeConnection(len(calls))

        pool = ConnectionPool(flaky, max_connections=1, acquire_timeout_seconds=0.05)
        with pytest.raises(OSError):
            pool.acquire()
        assert pool.size == 0
        assert pool.acquire().n == 2

    def test_close(self) -> None:
        factory = Factory()
        pool = ConnectionPool(factory, max_connections=2)
        idle = pool.acquire()
        busy = pool.acquire()
        pool.release(idle)
        pool.close()
        assert idle.closed
        assert not busy.closed
        pool.release(busy)
        assert busy.closed
        with pytest.raises(ConfigError):
            pool.acquire()

    def test_invalid_size(self) -> None:
        with pytest.raises(ValueError):
            ConnectionPool(Factory(), max_connections=0)


class TestPoolManager:
    """One pool per configured database."""

    def test_pool_per_database(self, tmp_path) -> None:
        config = QuarryConfig(
            databases={
                "1": {"engine": "sqlite", "details": {"db": str(tmp_path / "a.db")}},
                "2": {"engine": "sqlite", "details": {"db": str(tmp_path / "b.db")}},
            }
        )
        manager = PoolManager(config)
        try:
            assert manager.pool(1) is manager.pool(1)
            assert manager.pool(1) is not manager.pool(2)
            with manager.connection(1) as conn:
                assert conn.execute("SELECT 1").fetchone() == (1,)
        finally:
            manager.close()

    def test_unknown_database(self) -> None:
        with pytest.raises(ConfigError, match="not configured"):
            PoolManager(QuarryConfig()).pool(9)
