"""Transaction registry with timeout-driven reclamation.

The registry owns every in-flight transaction and the pooled connection it
holds. Each transaction carries its own ``asyncio.Lock``; every state change
checks the current state and transitions under that lock, so a timeout sweep
and a caller's commit or rollback cannot both take effect.

State machine::

    ACTIVE --commit--> COMMITTED
    ACTIVE --rollback / timeout--> ROLLED_BACK
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from routinegate.database import Connection, ConnectionPool
from routinegate.errors import EngineError, NotFoundError
from routinegate.logging import get_logger
from routinegate.metrics import get_metrics
from routinegate.models import RowResult, TransactionInfo, TransactionState

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass
class Transaction:
    """A registry-owned transaction and the connection it holds."""

    transaction_id: str
    connection: Connection | None
    started_at: datetime
    started_clock: float
    description: str | None = None
    state: TransactionState = TransactionState.ACTIVE
    statements: list[str] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def info(self) -> TransactionInfo:
        return TransactionInfo(
            transaction_id=self.transaction_id,
            state=self.state,
            started_at=self.started_at,
            statement_count=len(self.statements),
            description=self.description,
        )


class TransactionRegistry:
    """Owns in-flight transactions and their pooled connections."""

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        acquire_timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        self.pool = pool
        self.timeout_seconds = timeout_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.acquire_timeout_seconds = acquire_timeout_seconds
        self._clock = clock
        self._transactions: dict[str, Transaction] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._transactions)

    def active_ids(self) -> list[str]:
        return [
            txn.transaction_id
            for txn in self._transactions.values()
            if txn.state is TransactionState.ACTIVE
        ]

    def get(self, transaction_id: str) -> TransactionInfo:
        """Return a snapshot of an active transaction."""
        return self._require_active(transaction_id).info()

    def _require_active(self, transaction_id: str) -> Transaction:
        txn = self._transactions.get(transaction_id)
        if txn is None or txn.state is not TransactionState.ACTIVE:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return txn

    async def begin(self, description: str | None = None) -> str:
        """Acquire a connection, open a transaction on it and register it."""
        connection = await self.pool.acquire(self.acquire_timeout_seconds)
        try:
            await connection.begin()
        except EngineError:
            await self.pool.release(connection)
            logger.error("transaction_begin_failed")
            raise

        transaction_id = f"txn-{uuid.uuid4()}"
        self._transactions[transaction_id] = Transaction(
            transaction_id=transaction_id,
            connection=connection,
            started_at=datetime.now(UTC),
            started_clock=self._clock(),
            description=description,
        )
        get_metrics().transactions_active.inc()
        logger.info("transaction_started", transaction_id=transaction_id)
        return transaction_id

    async def execute(
        self,
        transaction_id: str,
        statement: str,
        params: Mapping[str, Any] | None = None,
    ) -> RowResult:
        """Run a statement inside an active transaction.

        A failing statement leaves the transaction ACTIVE; the caller decides
        whether to roll back.
        """
        txn = self._require_active(transaction_id)
        async with txn.lock:
            if txn.state is not TransactionState.ACTIVE or txn.connection is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            txn.statements.append(statement)
            try:
                return await txn.connection.execute(statement, params)
            except EngineError as exc:
                logger.warning(
                    "transaction_statement_failed",
                    transaction_id=transaction_id,
                    error=exc.reason,
                )
                raise

    async def commit(self, transaction_id: str) -> None:
        """Commit and release the connection."""
        txn = self._require_active(transaction_id)
        async with txn.lock:
            if txn.state is not TransactionState.ACTIVE or txn.connection is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            connection = txn.connection
            try:
                await connection.commit()
            except EngineError as exc:
                logger.error(
                    "transaction_commit_failed",
                    transaction_id=transaction_id,
                    error=exc.reason,
                )
                await self._abandon(txn, connection)
                await self._finish(txn, TransactionState.ROLLED_BACK, "rolled_back")
                raise
            await self._finish(txn, TransactionState.COMMITTED, "committed")
        logger.info("transaction_committed", transaction_id=transaction_id)

    async def rollback(self, transaction_id: str) -> None:
        """Roll back and release the connection."""
        txn = self._require_active(transaction_id)
        async with txn.lock:
            if txn.state is not TransactionState.ACTIVE or txn.connection is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            connection = txn.connection
            try:
                await connection.rollback()
            finally:
                # The connection is returned either way; the pool resets it.
                await self._finish(txn, TransactionState.ROLLED_BACK, "rolled_back")
        logger.info("transaction_rolled_back", transaction_id=transaction_id)

    async def _abandon(self, txn: Transaction, connection: Connection) -> None:
        try:
            await connection.rollback()
        except EngineError as exc:
            logger.error(
                "transaction_rollback_failed",
                transaction_id=txn.transaction_id,
                error=exc.reason,
            )

    async def _finish(self, txn: Transaction, state: TransactionState, outcome: str) -> None:
        connection = txn.connection
        txn.state = state
        txn.connection = None
        self._transactions.pop(txn.transaction_id, None)
        metrics = get_metrics()
        metrics.transactions_active.dec()
        metrics.transactions_total.inc(outcome)
        if connection is not None:
            await self.pool.release(connection)

    async def _force_rollback(self, transaction_id: str) -> bool:
        txn = self._transactions.get(transaction_id)
        if txn is None:
            return False
        async with txn.lock:
            # Lost the race to a caller's commit or rollback.
            if txn.state is not TransactionState.ACTIVE or txn.connection is None:
                return False
            await self._abandon(txn, txn.connection)
            await self._finish(txn, TransactionState.ROLLED_BACK, "timed_out")
        return True

    async def sweep(self) -> list[str]:
        """Force-roll back every active transaction older than the ceiling."""
        now = self._clock()
        expired = [
            txn.transaction_id
            for txn in list(self._transactions.values())
            if txn.state is TransactionState.ACTIVE
            and now - txn.started_clock > self.timeout_seconds
        ]
        terminated: list[str] = []
        for transaction_id in expired:
            if await self._force_rollback(transaction_id):
                terminated.append(transaction_id)
                logger.warning(
                    "transaction_timed_out",
                    transaction_id=transaction_id,
                    timeout_seconds=self.timeout_seconds,
                )
        return terminated

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("transaction_sweep_failed")

    def start(self) -> None:
        """Start the periodic timeout sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(
                self._sweep_loop(), name="routinegate-transaction-sweep"
            )

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def close(self) -> None:
        """Stop sweeping and roll back whatever is still open."""
        await self.stop()
        for transaction_id in self.active_ids():
            if await self._force_rollback(transaction_id):
                logger.warning("transaction_closed_on_shutdown", transaction_id=transaction_id)

    @asynccontextmanager
    async def transaction(self, description: str | None = None) -> AsyncIterator[str]:
        """Begin a transaction, commit on success, roll back on error."""
        transaction_id = await self.begin(description)
        try:
            yield transaction_id
        except BaseException:
            with suppress(NotFoundError):
                try:
                    await self.rollback(transaction_id)
                except EngineError as exc:
                    logger.error(
                        "transaction_rollback_failed",
                        transaction_id=transaction_id,
                        error=exc.reason,
                    )
            raise
        await self.commit(transaction_id)
