"""Connection ownership pool backed by psycopg.

Connections handed out by the pool run in autocommit mode; transactions are
opened and closed explicitly with ``begin``/``commit``/``rollback`` so the
transaction registry decides exactly when an engine-level transaction starts
and ends.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from routinegate.errors import EngineError, PoolExhaustedError
from routinegate.logging import get_logger
from routinegate.models import RowResult

logger = get_logger(__name__)


class Connection(Protocol):
    """Exclusive handle on one database session."""

    async def execute(
        self, statement: str, params: Mapping[str, Any] | None = None
    ) -> RowResult:
        """Run one statement and return its rows."""

    async def begin(self) -> None:
        """Start an engine-level transaction."""

    async def commit(self) -> None:
        """Commit the open transaction."""

    async def rollback(self) -> None:
        """Roll back the open transaction."""


class ConnectionPool(ABC):
    """Base class for pools that hand out exclusive connections."""

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def acquire(self, timeout: float | None = None) -> Connection:
        """Borrow a connection, waiting at most ``timeout`` seconds."""

    @abstractmethod
    async def release(self, connection: Connection) -> None:
        """Return a borrowed connection."""

    @asynccontextmanager
    async def connection(self, timeout: float | None = None) -> AsyncIterator[Connection]:
        """Borrow a connection for the duration of a block."""
        conn = await self.acquire(timeout)
        try:
            yield conn
        finally:
            await self.release(conn)


def _engine_error(exc: psycopg.Error) -> EngineError:
    message = str(exc).strip() or type(exc).__name__
    sqlstate = getattr(exc, "sqlstate", None)
    details = {"sqlstate": sqlstate} if sqlstate else None
    return EngineError(message, details=details)


class PostgresConnection:
    """Adapter exposing a psycopg async connection as a ``Connection``."""

    def __init__(self, raw: psycopg.AsyncConnection[Any]) -> None:
        self.raw = raw

    async def execute(
        self, statement: str, params: Mapping[str, Any] | None = None
    ) -> RowResult:
        try:
            cursor = await self.raw.execute(statement, params)
            rows = await cursor.fetchall() if cursor.description else []
        except psycopg.Error as exc:
            raise _engine_error(exc) from exc
        columns = [column.name for column in cursor.description or []]
        return RowResult(
            columns=columns,
            rows=[dict(row) for row in rows],
            rowcount=cursor.rowcount,
        )

    async def begin(self) -> None:
        await self.execute("BEGIN")

    async def commit(self) -> None:
        await self.execute("COMMIT")

    async def rollback(self) -> None:
        await self.execute("ROLLBACK")


class PostgresConnectionPool(ConnectionPool):
    """Bounded pool of autocommit psycopg connections."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        acquire_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.acquire_timeout = acquire_timeout
        self._pool = AsyncConnectionPool(
            dsn,
            min_size=min_size,
            max_size=max(max_size, min_size),
            open=False,
            kwargs={"autocommit": True, "row_factory": dict_row},
            name="routinegate",
        )

    async def open(self) -> None:
        await self._pool.open()
        logger.info("connection_pool_opened", max_size=self._pool.max_size)

    async def close(self) -> None:
        await self._pool.close()
        logger.info("connection_pool_closed")

    async def acquire(self, timeout: float | None = None) -> Connection:
        wait = self.acquire_timeout if timeout is None else timeout
        try:
            raw = await self._pool.getconn(timeout=wait)
        except PoolTimeout as exc:
            logger.warning("connection_pool_exhausted", timeout_seconds=wait)
            raise PoolExhaustedError(
                f"No database connection available within {wait:g}s"
            ) from exc
        return PostgresConnection(raw)

    async def release(self, connection: Connection) -> None:
        if not isinstance(connection, PostgresConnection):
            raise TypeError("connection was not issued by this pool")
        await self._pool.putconn(connection.raw)
