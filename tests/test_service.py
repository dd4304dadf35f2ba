"""Tests for the RoutineGate composition root and tool dispatch."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest

from routinegate.config import Settings
from routinegate.errors import FeatureDisabledError
from routinegate.models import ToolCallRequest
from routinegate.service import RoutineGate


def _settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "version_store_url": str(tmp_path / "versions.db"),
        "audit_log_dir": str(tmp_path / "audit"),
        "enable_write_operations": True,
        "enable_routine_modifications": True,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
async def service(tmp_path: Path, make_pool) -> AsyncIterator[RoutineGate]:
    async with RoutineGate(_settings(tmp_path), pool=make_pool()) as gate:
        yield gate


async def _call(service: RoutineGate, tool_name: str, **arguments: Any):
    return await service.call_tool(ToolCallRequest(tool_name=tool_name, arguments=arguments))


@pytest.mark.asyncio
async def test_start_prepares_components(service, engine) -> None:
    assert service.pool.opened is True
    assert "dbo_draft" in engine.schemas
    assert service.registry.running is True
    assert service.tool_names() == [
        "begin_transaction",
        "commit_transaction",
        "create_draft",
        "deploy_draft",
        "discard_draft",
        "execute_write",
        "list_versions",
        "rollback_routine",
        "rollback_transaction",
        "test_draft",
    ]


@pytest.mark.asyncio
async def test_close_rolls_back_and_flushes(tmp_path, make_pool) -> None:
    pool = make_pool()
    gate = RoutineGate(_settings(tmp_path), pool=pool)
    await gate.start()
    transaction_id = await gate.begin_transaction("left open")

    await gate.close()

    assert pool.closed is True
    assert pool.in_use == []
    assert transaction_id not in gate.registry.active_ids()
    [log_file] = (tmp_path / "audit").glob("audit-*.log")
    entries = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert entries[0]["operation"] == "begin_transaction"
    assert entries[0]["details"]["transaction_id"] == transaction_id


@pytest.mark.asyncio
async def test_unknown_tool(service) -> None:
    result = await _call(service, "drop_everything")
    assert result.success is False
    assert result.error_code == "NOT_FOUND"


@pytest.mark.asyncio
async def test_invalid_arguments(service) -> None:
    result = await _call(service, "rollback_routine", schema="dbo", name="Example", version=0)
    assert result.success is False
    assert result.error_code == "VALIDATION_ERROR"

    result = await _call(service, "create_draft", schema="dbo")
    assert result.error_code == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_routine_workflow_through_tools(service, engine, definition_for) -> None:
    engine.define("dbo", "Example", definition_for("old"))

    created = await _call(
        service, "create_draft", schema="dbo", name="Example", definition=definition_for("new")
    )
    assert created.success is True
    assert created.result["qualified_name"] == "dbo_draft.Example"

    tested = await _call(service, "test_draft", schema="dbo", name="Example", parameters={"id": 1})
    assert tested.result["rows"] == [{"id": 1, "label": "new"}]

    deployed = await _call(service, "deploy_draft", schema="dbo", name="Example", comment="go")
    assert deployed.success is True
    assert deployed.result["backup_version"] == 1

    versions = await _call(service, "list_versions", schema="dbo", name="Example")
    assert [item["version"] for item in versions.result] == [1]
    assert versions.result[0]["comment"] == "go"

    restored = await _call(service, "rollback_routine", schema="dbo", name="Example")
    assert restored.result["restored_version"] == 1
    assert engine.definition("dbo", "Example") == definition_for("old")


@pytest.mark.asyncio
async def test_engine_errors_become_error_results(service, engine, definition_for) -> None:
    await _call(
        service, "create_draft", schema="dbo", name="Example", definition=definition_for("v1")
    )
    engine.fail_when = lambda statement: statement.startswith("CREATE FUNCTION dbo.")

    result = await _call(service, "deploy_draft", schema="dbo", name="Example")

    assert result.success is False
    assert result.error_code == "ENGINE_ERROR"
    assert "simulated failure" in result.error


@pytest.mark.asyncio
async def test_transaction_tools(service, engine) -> None:
    begun = await _call(service, "begin_transaction", description="cleanup")
    transaction_id = begun.result["transaction_id"]
    assert begun.result["timeout_seconds"] == 300.0

    written = await _call(
        service, "execute_write", statement="DELETE FROM t", transaction_id=transaction_id
    )
    assert written.result["committed"] is False

    committed = await _call(service, "commit_transaction", transaction_id=transaction_id)
    assert committed.result == {"transaction_id": transaction_id, "state": "committed"}

    again = await _call(service, "rollback_transaction", transaction_id=transaction_id)
    assert again.success is False
    assert again.error_code == "NOT_FOUND"

    operations = [(entry.operation, entry.success) for entry in service.audit._buffer]
    assert operations == [
        ("begin_transaction", True),
        ("execute_write", True),
        ("commit_transaction", True),
        ("rollback_transaction", False),
    ]


@pytest.mark.asyncio
async def test_row_limit_reported(tmp_path, make_pool, engine) -> None:
    settings = _settings(tmp_path, max_rows_affected=5)
    async with RoutineGate(settings, pool=make_pool()) as gate:
        engine.next_rowcount = 6
        result = await _call(gate, "execute_write", statement="UPDATE t SET x = 1")
    assert result.error_code == "LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_pool_exhaustion_reported(tmp_path, make_pool) -> None:
    async with RoutineGate(_settings(tmp_path), pool=make_pool(size=1)) as gate:
        first = await _call(gate, "begin_transaction")
        second = await _call(gate, "begin_transaction")
        assert first.success is True
        assert second.error_code == "POOL_EXHAUSTED"


@pytest.mark.parametrize(
    ("tool_name", "arguments"),
    [
        ("begin_transaction", {}),
        ("execute_write", {"statement": "DELETE FROM t"}),
        ("commit_transaction", {"transaction_id": "txn-1"}),
    ],
)
@pytest.mark.asyncio
async def test_write_tools_disabled(tmp_path, make_pool, tool_name, arguments) -> None:
    settings = _settings(tmp_path, enable_write_operations=False)
    async with RoutineGate(settings, pool=make_pool()) as gate:
        result = await _call(gate, tool_name, **arguments)
    assert result.success is False
    assert result.error_code == "FEATURE_DISABLED"


@pytest.mark.asyncio
async def test_routine_tools_disabled(tmp_path, make_pool, engine, definition_for) -> None:
    settings = _settings(tmp_path, enable_routine_modifications=False)
    async with RoutineGate(settings, pool=make_pool()) as gate:
        assert "dbo_draft" not in engine.schemas
        result = await _call(
            gate, "create_draft", schema="dbo", name="Example", definition=definition_for("v1")
        )
        assert result.error_code == "FEATURE_DISABLED"
        with pytest.raises(FeatureDisabledError):
            await gate.rollback_routine("dbo", "Example")
        # Reading stored versions stays available.
        listed = await _call(gate, "list_versions", schema="dbo", name="Example")
        assert listed.success is True
        assert listed.result == []


@pytest.mark.asyncio
async def test_audit_disabled(tmp_path, make_pool, definition_for) -> None:
    settings = _settings(tmp_path, audit_enabled=False)
    async with RoutineGate(settings, pool=make_pool()) as gate:
        await _call(
            gate, "create_draft", schema="dbo", name="Example", definition=definition_for("v1")
        )
        assert gate.audit.pending == 0
    assert not (tmp_path / "audit").exists()


@pytest.fixture()
def clocked_service(tmp_path: Path, make_pool, clock) -> Callable[[], RoutineGate]:
    def _build() -> RoutineGate:
        return RoutineGate(_settings(tmp_path), pool=make_pool(), clock=clock)

    return _build


@pytest.mark.asyncio
async def test_abandoned_transaction_reclaimed(clocked_service, clock) -> None:
    async with clocked_service() as gate:
        transaction_id = await gate.begin_transaction()
        clock.advance(301)
        assert await gate.registry.sweep() == [transaction_id]
        result = await _call(gate, "commit_transaction", transaction_id=transaction_id)
        assert result.error_code == "NOT_FOUND"
        assert gate.pool.in_use == []


@pytest.mark.asyncio
async def test_version_store_outage_becomes_engine_error(
    tmp_path, make_pool, engine, definition_for
) -> None:
    from routinegate.versions import VersionStore

    broken_store = VersionStore(str(tmp_path / "missing" / "versions.db"))
    gate = RoutineGate(_settings(tmp_path), pool=make_pool(), versions=broken_store)
    await gate.lifecycle.ensure_draft_schema()
    engine.define("dbo", "Example", definition_for("old"))
    try:
        await _call(
            gate, "create_draft", schema="dbo", name="Example", definition=definition_for("new")
        )
        result = await _call(gate, "deploy_draft", schema="dbo", name="Example")
    finally:
        await gate.close()

    assert result.success is False
    assert result.error_code == "ENGINE_ERROR"
    assert "Version store failure" in result.error
    assert engine.definition("dbo", "Example") == definition_for("old")


@pytest.mark.asyncio
async def test_close_runs_every_step_when_one_fails(tmp_path, make_pool, monkeypatch) -> None:
    pool = make_pool()
    gate = RoutineGate(_settings(tmp_path), pool=pool)
    await gate.start()
    await gate.begin_transaction()

    async def failing_registry_close() -> None:
        raise RuntimeError("release failed")

    monkeypatch.setattr(gate.registry, "close", failing_registry_close)

    with pytest.raises(RuntimeError, match="release failed"):
        await gate.close()

    assert pool.closed is True
    assert gate.audit.pending == 0
    assert list((tmp_path / "audit").glob("audit-*.log"))
    await gate.registry.stop()


@pytest.mark.asyncio
async def test_metrics_text(service) -> None:
    transaction_id = await service.begin_transaction()
    await service.rollback_transaction(transaction_id)

    text = service.metrics_text()
    assert "# TYPE routinegate_transactions_active gauge" in text
    assert 'routinegate_transactions_total{outcome="rolled_back"}' in text
