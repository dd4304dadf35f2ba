"""Audit sink tests."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

import pytest

from routinegate.audit import AuditSink, audit_file_name
from routinegate.metrics import get_metrics
from routinegate.models import AuditEntry


def _entry(operation: str = "deploy_draft", **kwargs) -> AuditEntry:
    return AuditEntry(operation=operation, actor="mcp-user", success=True, **kwargs)


def _read_lines(path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


@pytest.mark.asyncio
async def test_flush_appends_json_lines_to_dated_file(tmp_path) -> None:
    sink = AuditSink(tmp_path / "audit")
    timestamp = datetime(2026, 3, 14, 9, 30, tzinfo=UTC)
    sink.record(_entry(timestamp=timestamp, details={"schema": "dbo"}))
    sink.log("rollback_routine", actor="mcp-user", success=False, error="Version 3 not found")

    assert await sink.flush() == 2
    assert sink.pending == 0

    dated = tmp_path / "audit" / "audit-2026-03-14.log"
    [record] = _read_lines(dated)
    assert record["operation"] == "deploy_draft"
    assert record["details"] == {"schema": "dbo"}
    assert record["timestamp"] == "2026-03-14T09:30:00+00:00"

    today = tmp_path / "audit" / audit_file_name(_entry())
    [failure] = _read_lines(today)
    assert failure["success"] is False
    assert failure["error"] == "Version 3 not found"


@pytest.mark.asyncio
async def test_flush_appends_rather_than_overwrites(tmp_path) -> None:
    sink = AuditSink(tmp_path)
    sink.record(_entry("first"))
    await sink.flush()
    sink.record(_entry("second"))
    await sink.flush()
    lines = _read_lines(tmp_path / audit_file_name(_entry()))
    assert [line["operation"] for line in lines] == ["first", "second"]


@pytest.mark.asyncio
async def test_failed_flush_requeues_batch_in_order(tmp_path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("", encoding="utf-8")
    sink = AuditSink(blocker)
    failures_before = get_metrics().audit_flush_failures_total.get()

    sink.record(_entry("first"))
    sink.record(_entry("second"))
    assert await sink.flush() == 0
    sink.record(_entry("third"))

    assert sink.pending == 3
    assert [entry.operation for entry in sink._buffer] == ["first", "second", "third"]
    assert get_metrics().audit_flush_failures_total.get() == failures_before + 1

    sink.log_dir = tmp_path / "recovered"
    assert await sink.flush() == 3
    lines = _read_lines(tmp_path / "recovered" / audit_file_name(_entry()))
    assert [line["operation"] for line in lines] == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_full_buffer_wakes_drain_task(tmp_path) -> None:
    sink = AuditSink(tmp_path, buffer_size=3, flush_interval_seconds=60)
    sink.start()
    try:
        for index in range(3):
            sink.record(_entry(f"op-{index}"))
        for _ in range(50):
            if sink.pending == 0:
                break
            await asyncio.sleep(0.01)
        assert sink.pending == 0
    finally:
        await sink.close()
    assert len(_read_lines(tmp_path / audit_file_name(_entry()))) == 3


@pytest.mark.asyncio
async def test_periodic_flush(tmp_path) -> None:
    sink = AuditSink(tmp_path, buffer_size=100, flush_interval_seconds=0.01)
    sink.start()
    try:
        sink.record(_entry())
        await asyncio.sleep(0.1)
        assert sink.pending == 0
    finally:
        await sink.close()


@pytest.mark.asyncio
async def test_close_flushes_remaining_entries(tmp_path) -> None:
    sink = AuditSink(tmp_path, flush_interval_seconds=60)
    sink.start()
    sink.record(_entry())
    await sink.close()
    assert sink.pending == 0
    assert (tmp_path / audit_file_name(_entry())).exists()


@pytest.mark.asyncio
async def test_disabled_sink_records_nothing(tmp_path) -> None:
    sink = AuditSink(tmp_path, enabled=False)
    sink.record(_entry())
    assert sink.pending == 0
    assert await sink.flush() == 0
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_failed_flush_stops_buffer_full_wakeups(tmp_path) -> None:
    blocker = tmp_path / "blocked"
    blocker.write_text("", encoding="utf-8")
    sink = AuditSink(blocker, buffer_size=2, flush_interval_seconds=60)

    sink.record(_entry("first"))
    sink.record(_entry("second"))
    assert sink._wake.is_set()
    assert await sink.flush() == 0
    assert not sink._wake.is_set()

    for index in range(5):
        sink.record(_entry(f"later-{index}"))
    assert not sink._wake.is_set()
    assert sink.pending == 7

    sink.log_dir = tmp_path / "audit"
    assert await sink.flush() == 7
    sink.record(_entry("a"))
    sink.record(_entry("b"))
    assert sink._wake.is_set()
