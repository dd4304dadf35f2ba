"""Buffered, append-only audit log.

``record`` only appends to an in-memory buffer. A background drain task
writes the buffer to ``audit-YYYY-MM-DD.log`` (one JSON object per line) when
the buffer fills up or the flush interval elapses. A failed write puts the
batch back at the front of the buffer; the failure is logged and never
reaches the caller whose operation was being recorded.

The buffer is never trimmed. After a failed flush a full buffer no longer
wakes the drain task, so retries happen only on the flush interval until a
write succeeds again.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from contextlib import suppress
from pathlib import Path
from typing import Any

from routinegate.logging import get_logger
from routinegate.metrics import get_metrics
from routinegate.models import AuditEntry

logger = get_logger(__name__)

DEFAULT_BUFFER_SIZE = 100
DEFAULT_FLUSH_INTERVAL_SECONDS = 30.0


def audit_file_name(entry: AuditEntry) -> str:
    return f"audit-{entry.timestamp.date().isoformat()}.log"


def _serialize(entry: AuditEntry) -> str:
    payload = entry.model_dump()
    payload["timestamp"] = entry.timestamp.isoformat()
    return json.dumps(payload, sort_keys=True, default=str)


class AuditSink:
    """Collects audit entries and drains them to dated log files."""

    def __init__(
        self,
        log_dir: str | Path,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        flush_interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        enabled: bool = True,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.buffer_size = max(1, buffer_size)
        self.flush_interval_seconds = flush_interval_seconds
        self.enabled = enabled
        self._buffer: deque[AuditEntry] = deque()
        self._wake = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._backing_off = False

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def record(self, entry: AuditEntry) -> None:
        """Queue an entry; wakes the drain task once the buffer is full."""
        if not self.enabled:
            return
        self._buffer.append(entry)
        if len(self._buffer) >= self.buffer_size and not self._backing_off:
            self._wake.set()

    def log(
        self,
        operation: str,
        *,
        actor: str,
        success: bool,
        details: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        self.record(
            AuditEntry(
                operation=operation,
                actor=actor,
                details=details or {},
                success=success,
                error=error,
            )
        )

    def _write_batch(self, batch: list[AuditEntry]) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        lines_by_file: dict[str, list[str]] = {}
        for entry in batch:
            lines_by_file.setdefault(audit_file_name(entry), []).append(_serialize(entry))
        for file_name, lines in lines_by_file.items():
            with (self.log_dir / file_name).open("a", encoding="utf-8") as handle:
                handle.write("\n".join(lines) + "\n")

    async def flush(self) -> int:
        """Write everything buffered so far. Returns the number of entries written."""
        async with self._flush_lock:
            if not self._buffer:
                return 0
            batch = list(self._buffer)
            self._buffer.clear()
            try:
                await asyncio.to_thread(self._write_batch, batch)
            except Exception as exc:
                self._buffer.extendleft(reversed(batch))
                self._backing_off = True
                self._wake.clear()
                get_metrics().audit_flush_failures_total.inc()
                logger.error(
                    "audit_flush_failed",
                    error=str(exc),
                    batch_size=len(batch),
                    pending=len(self._buffer),
                )
                return 0
            self._backing_off = False
        logger.debug("audit_flushed", count=len(batch))
        return len(batch)

    async def _drain_loop(self) -> None:
        while True:
            with suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.flush_interval_seconds)
            self._wake.clear()
            await self.flush()

    def start(self) -> None:
        """Start the periodic drain task."""
        if not self.enabled:
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain_loop(), name="routinegate-audit-drain")

    async def close(self) -> None:
        """Stop the drain task and flush what is left."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self.flush()
