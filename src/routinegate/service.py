"""Composition root and tool dispatch for RoutineGate.

``RoutineGate`` wires the admission gate, connection pool, transaction
registry, version store, lifecycle orchestrator, write path and audit sink
from one ``Settings`` object, enforces the feature switches, and exposes every
operation both as a method and through ``call_tool`` for a dispatch layer that
only speaks tool names and JSON arguments.
"""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import pydantic

from routinegate.audit import AuditSink
from routinegate.config import Settings
from routinegate.database import ConnectionPool, PostgresConnectionPool
from routinegate.errors import (
    FeatureDisabledError,
    NotFoundError,
    RoutineGateError,
    ValidationError,
)
from routinegate.gate import AdmissionGate
from routinegate.lifecycle import RoutineLifecycle
from routinegate.logging import bind_tool_call, clear_logging_context, get_logger
from routinegate.metrics import get_metrics
from routinegate.models import (
    BeginTransactionArgs,
    CreateDraftArgs,
    DeployDraftArgs,
    DeployResult,
    DraftInfo,
    DraftTestArgs,
    ExecuteWriteArgs,
    RollbackResult,
    RollbackRoutineArgs,
    RoutineRef,
    RoutineVersion,
    RowResult,
    ToolCallRequest,
    ToolResult,
    TransactionRef,
    WriteResult,
)
from routinegate.transactions import TransactionRegistry
from routinegate.versions import VersionStore
from routinegate.writes import WriteExecutor

logger = get_logger(__name__)

# Tool names are plain snake_case words.
_TOOL_NAME_RE = re.compile(r"^[a-z][a-z_]*$")

ToolHandler = Callable[[Any], Awaitable[Any]]


class RoutineGate:
    """Owns every component for the lifetime of one process."""

    def __init__(
        self,
        settings: Settings,
        *,
        pool: ConnectionPool | None = None,
        versions: VersionStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.gate = AdmissionGate(settings.denied_keywords)
        self.pool = pool or PostgresConnectionPool(
            settings.database_url,
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
            acquire_timeout=settings.pool_acquire_timeout_seconds,
        )
        self.registry = TransactionRegistry(
            self.pool,
            timeout_seconds=settings.transaction_timeout_seconds,
            sweep_interval_seconds=settings.sweep_interval_seconds,
            acquire_timeout_seconds=settings.pool_acquire_timeout_seconds,
            clock=clock,
        )
        self.versions = versions or VersionStore(
            settings.resolved_version_store_url, retention=settings.version_retention
        )
        self.audit = AuditSink(
            settings.audit_log_dir,
            buffer_size=settings.audit_buffer_size,
            flush_interval_seconds=settings.audit_flush_interval_seconds,
            enabled=settings.audit_enabled,
        )
        self.lifecycle = RoutineLifecycle(
            pool=self.pool,
            registry=self.registry,
            versions=self.versions,
            gate=self.gate,
            audit=self.audit,
            draft_schema=settings.draft_schema,
            actor=settings.actor,
            allowed_schemas=settings.allowed_schemas,
            acquire_timeout_seconds=settings.pool_acquire_timeout_seconds,
        )
        self.writes = WriteExecutor(
            gate=self.gate,
            registry=self.registry,
            audit=self.audit,
            max_rows_affected=settings.max_rows_affected,
            actor=settings.actor,
        )
        self._tools: dict[str, tuple[type[pydantic.BaseModel], ToolHandler]] = {
            "begin_transaction": (BeginTransactionArgs, self._tool_begin_transaction),
            "commit_transaction": (TransactionRef, self._tool_commit_transaction),
            "rollback_transaction": (TransactionRef, self._tool_rollback_transaction),
            "execute_write": (ExecuteWriteArgs, self._tool_execute_write),
            "create_draft": (CreateDraftArgs, self._tool_create_draft),
            "test_draft": (DraftTestArgs, self._tool_test_draft),
            "deploy_draft": (DeployDraftArgs, self._tool_deploy_draft),
            "discard_draft": (RoutineRef, self._tool_discard_draft),
            "rollback_routine": (RollbackRoutineArgs, self._tool_rollback_routine),
            "list_versions": (RoutineRef, self._tool_list_versions),
        }
        self._started = False

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        """Open the pool, prepare the stores and start background tasks."""
        if self._started:
            return
        await self.pool.open()
        await self.versions.ensure_store()
        if self.settings.enable_routine_modifications:
            await self.lifecycle.ensure_draft_schema()
        self.registry.start()
        self.audit.start()
        self._started = True
        logger.info(
            "routinegate_started",
            write_operations=self.settings.enable_write_operations,
            routine_modifications=self.settings.enable_routine_modifications,
            draft_schema=self.settings.draft_schema,
        )

    async def close(self) -> None:
        """Roll back open transactions, flush the audit log and release resources.

        Every step runs even if an earlier one fails; the first failure is
        re-raised once all of them have been attempted.
        """
        steps: list[tuple[str, Callable[[], Awaitable[None]]]] = [
            ("registry", self.registry.close),
            ("audit", self.audit.close),
            ("versions", self.versions.close),
            ("pool", self.pool.close),
        ]
        first_error: Exception | None = None
        for component, step in steps:
            try:
                await step()
            except Exception as exc:
                logger.exception("routinegate_close_step_failed", component=component)
                first_error = first_error or exc
        self._started = False
        logger.info("routinegate_stopped")
        if first_error is not None:
            raise first_error

    def metrics_text(self) -> str:
        """Current metrics in Prometheus text format for a scrape endpoint."""
        return get_metrics().collect_all()

    async def __aenter__(self) -> RoutineGate:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def tool_names(self) -> list[str]:
        return sorted(self._tools)

    # -- feature switches ------------------------------------------------

    def _require_writes(self) -> None:
        if not self.settings.enable_write_operations:
            raise FeatureDisabledError(
                "Write operations are disabled (set ROUTINEGATE_ENABLE_WRITE_OPERATIONS=true)"
            )

    def _require_routine_modifications(self) -> None:
        if not self.settings.enable_routine_modifications:
            raise FeatureDisabledError(
                "Routine modifications are disabled "
                "(set ROUTINEGATE_ENABLE_ROUTINE_MODIFICATIONS=true)"
            )

    # -- transactions ----------------------------------------------------

    async def begin_transaction(self, description: str | None = None) -> str:
        self._require_writes()
        try:
            transaction_id = await self.registry.begin(description)
        except RoutineGateError as exc:
            self._audit_transaction("begin_transaction", None, error=exc.reason)
            raise
        self._audit_transaction("begin_transaction", transaction_id)
        return transaction_id

    async def commit_transaction(self, transaction_id: str) -> None:
        self._require_writes()
        try:
            await self.registry.commit(transaction_id)
        except RoutineGateError as exc:
            self._audit_transaction("commit_transaction", transaction_id, error=exc.reason)
            raise
        self._audit_transaction("commit_transaction", transaction_id)

    async def rollback_transaction(self, transaction_id: str) -> None:
        self._require_writes()
        try:
            await self.registry.rollback(transaction_id)
        except RoutineGateError as exc:
            self._audit_transaction("rollback_transaction", transaction_id, error=exc.reason)
            raise
        self._audit_transaction("rollback_transaction", transaction_id)

    def _audit_transaction(
        self, operation: str, transaction_id: str | None, *, error: str | None = None
    ) -> None:
        self.audit.log(
            operation,
            actor=self.settings.actor,
            success=error is None,
            details={"transaction_id": transaction_id},
            error=error,
        )

    async def execute_write(
        self,
        statement: str,
        params: dict[str, Any] | None = None,
        transaction_id: str | None = None,
    ) -> WriteResult:
        self._require_writes()
        return await self.writes.execute(statement, params, transaction_id)

    # -- routines --------------------------------------------------------

    async def create_draft(self, schema: str, name: str, definition: str) -> DraftInfo:
        self._require_routine_modifications()
        return await self.lifecycle.create_draft(schema, name, definition)

    async def test_draft(
        self, schema: str, name: str, parameters: dict[str, Any] | None = None
    ) -> RowResult:
        self._require_routine_modifications()
        return await self.lifecycle.test_draft(schema, name, parameters)

    async def deploy_draft(
        self, schema: str, name: str, comment: str | None = None
    ) -> DeployResult:
        self._require_routine_modifications()
        return await self.lifecycle.deploy_draft(schema, name, comment)

    async def discard_draft(self, schema: str, name: str) -> None:
        self._require_routine_modifications()
        await self.lifecycle.discard_draft(schema, name)

    async def rollback_routine(
        self, schema: str, name: str, version: int | None = None
    ) -> RollbackResult:
        self._require_routine_modifications()
        return await self.lifecycle.rollback(schema, name, version)

    async def list_versions(self, schema: str, name: str) -> list[RoutineVersion]:
        return await self.lifecycle.list_versions(schema, name)

    # -- tool dispatch ---------------------------------------------------

    async def call_tool(self, request: ToolCallRequest) -> ToolResult:
        """Run one tool by name, turning every failure into an error result."""
        tool_name = request.tool_name
        if not _TOOL_NAME_RE.fullmatch(tool_name) or tool_name not in self._tools:
            return ToolResult(
                success=False,
                error=f"Unknown tool: {tool_name}",
                error_code=NotFoundError.code,
            )
        args_model, handler = self._tools[tool_name]
        try:
            arguments = args_model.model_validate(request.arguments)
        except pydantic.ValidationError as exc:
            return ToolResult(
                success=False,
                error=f"Invalid arguments for {tool_name}: {exc.errors()[0]['msg']}",
                error_code=ValidationError.code,
            )
        bind_tool_call(tool_name, uuid.uuid4().hex[:12])
        try:
            result = await handler(arguments)
        except RoutineGateError as exc:
            logger.info("tool_call_failed", code=exc.code, error=exc.reason)
            return ToolResult(success=False, error=exc.reason, error_code=exc.code)
        finally:
            clear_logging_context()
        return ToolResult(success=True, result=result)

    async def _tool_begin_transaction(self, args: BeginTransactionArgs) -> dict[str, Any]:
        transaction_id = await self.begin_transaction(args.description)
        return {
            "transaction_id": transaction_id,
            "timeout_seconds": self.registry.timeout_seconds,
        }

    async def _tool_commit_transaction(self, args: TransactionRef) -> dict[str, Any]:
        await self.commit_transaction(args.transaction_id)
        return {"transaction_id": args.transaction_id, "state": "committed"}

    async def _tool_rollback_transaction(self, args: TransactionRef) -> dict[str, Any]:
        await self.rollback_transaction(args.transaction_id)
        return {"transaction_id": args.transaction_id, "state": "rolled_back"}

    async def _tool_execute_write(self, args: ExecuteWriteArgs) -> dict[str, Any]:
        result = await self.execute_write(args.statement, args.params, args.transaction_id)
        return result.model_dump(mode="json")

    async def _tool_create_draft(self, args: CreateDraftArgs) -> dict[str, Any]:
        draft = await self.create_draft(args.schema_name, args.routine_name, args.definition)
        return draft.model_dump(mode="json")

    async def _tool_test_draft(self, args: DraftTestArgs) -> dict[str, Any]:
        result = await self.test_draft(args.schema_name, args.routine_name, args.parameters)
        return result.model_dump(mode="json")

    async def _tool_deploy_draft(self, args: DeployDraftArgs) -> dict[str, Any]:
        result = await self.deploy_draft(args.schema_name, args.routine_name, args.comment)
        return result.model_dump(mode="json")

    async def _tool_discard_draft(self, args: RoutineRef) -> dict[str, Any]:
        await self.discard_draft(args.schema_name, args.routine_name)
        return {"schema": args.schema_name, "name": args.routine_name, "discarded": True}

    async def _tool_rollback_routine(self, args: RollbackRoutineArgs) -> dict[str, Any]:
        result = await self.rollback_routine(args.schema_name, args.routine_name, args.version)
        return result.model_dump(mode="json")

    async def _tool_list_versions(self, args: RoutineRef) -> list[dict[str, Any]]:
        versions = await self.list_versions(args.schema_name, args.routine_name)
        return [version.model_dump(mode="json") for version in versions]
