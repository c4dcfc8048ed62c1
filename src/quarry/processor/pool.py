"""Connection pooling - one bounded pool per configured database."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from quarry.config import DatabaseConfig, PoolConfig, QuarryConfig
from quarry.driver import the_driver
from quarry.driver.base import connect
from quarry.errors import ConfigError, QueryTimeout

logger = logging.getLogger(__name__)


def _close_quietly(connection: Any) -> None:
    try:
        connection.close()
    except Exception as e:
        logger.debug(f"Error closing connection: {e}")


class ConnectionPool:
    """A thread-safe, bounded pool of connections to one database.

    Connections are created lazily by `factory` up to `max_connections`.
    `acquire` blocks until a connection is free or `acquire_timeout_seconds`
    passes. A connection checked in after an error is closed instead of reused.

    Example:
        >>> pool = ConnectionPool(lambda: sqlite3.connect("app.db"), max_connections=4)
        >>> with pool.connection() as conn:
        ...     conn.execute("SELECT 1")
    """

    def __init__(
        self,
        factory: Callable[[], Any],
        max_connections: int = 15,
        acquire_timeout_seconds: float = 30.0,
        name: str = "pool",
    ) -> None:
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.factory = factory
        self.max_connections = max_connections
        self.acquire_timeout_seconds = acquire_timeout_seconds
        self.name = name
        self._idle: list[Any] = []
        self._size = 0
        self._checked_out = 0
        self._closed = False
        self._cond = threading.Condition(threading.Lock())

    @property
    def checked_out(self) -> int:
        """Connections currently handed out."""
        with self._cond:
            return self._checked_out

    @property
    def size(self) -> int:
        """Open connections, idle or checked out."""
        with self._cond:
            return self._size

    def acquire(self, timeout: float | None = None) -> Any:
        """Check out a connection.

        Raises:
            QueryTimeout: If no connection is free within the timeout.
            ConfigError: If the pool has been closed.
        """
        timeout = self.acquire_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise ConfigError(f"Connection pool {self.name} is closed")
                if self._idle:
                    self._checked_out += 1
                    return self._idle.pop()
                if self._size < self.max_connections:
                    # Reserve the slot, then connect without holding the lock
                    self._size += 1
                    self._checked_out += 1
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(f"Timed out waiting for a connection from {self.name}")
                    raise QueryTimeout(timeout)
                self._cond.wait(remaining)

        try:
            connection = self.factory()
        except BaseException:
            with self._cond:
                self._size -= 1
                self._checked_out -= 1
                self._cond.notify()
            raise
        logger.debug(f"Opened connection {self._size}/{self.max_connections} for {self.name}")
        return connection

    def release(self, connection: Any, discard: bool = False) -> None:
        """Return a connection; `discard` closes it instead of pooling it."""
        with self._cond:
            self._checked_out -= 1
            if discard or self._closed:
                self._size -= 1
            else:
                self._idle.append(connection)
                connection = None
            self._cond.notify()
        if connection is not None:
            _close_quietly(connection)

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Check out a connection for the duration of the block."""
        conn = self.acquire()
        try:
            yield conn
        except BaseException:
            self.release(conn, discard=True)
            raise
        self.release(conn)

    def close(self) -> None:
        """Close idle connections; checked-out ones are closed when released."""
        with self._cond:
            self._closed = True
            idle, self._idle = self._idle, []
            self._size -= len(idle)
            self._cond.notify_all()
        for conn in idle:
            _close_quietly(conn)


class PoolManager:
    """Lazily creates one `ConnectionPool` per configured database id."""

    def __init__(self, config: QuarryConfig) -> None:
        self.config = config
        self._pools: dict[int, ConnectionPool] = {}
        self._lock = threading.Lock()

    def _factory(self, database: DatabaseConfig) -> Callable[[], Any]:
        driver = the_driver(database.engine, for_query=True)
        details = dict(database.details)
        return lambda: connect(driver, details)

    def pool(self, database_id: int) -> ConnectionPool:
        with self._lock:
            pool = self._pools.get(database_id)
            if pool is None:
                database = self.config.database(database_id)
                if database is None:
                    raise ConfigError(f"Database {database_id} is not configured", database_id=database_id)
                settings: PoolConfig = self.config.pool
                pool = ConnectionPool(
                    self._factory(database),
                    max_connections=settings.max_connections,
                    acquire_timeout_seconds=settings.acquire_timeout_seconds,
                    name=f"database {database_id} ({database.engine})",
                )
                self._pools[database_id] = pool
            return pool

    def connection(self, database_id: int) -> Any:
        """Context manager checking out a connection to `database_id`."""
        return self.pool(database_id).connection()

    def close(self) -> None:
        with self._lock:
            pools, self._pools = list(self._pools.values()), {}
        for pool in pools:
            pool.close()
