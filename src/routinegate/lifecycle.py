"""Draft, test, deploy and rollback workflow for database routines.

Drafts live in a dedicated schema that production traffic never reads. A
deploy always stores the outgoing production definition before touching
production, swaps the routine inside a single registry transaction, and only
removes the draft after that transaction commits. A rollback restores a stored
snapshot the same way, without snapshotting the definition it replaces.

Operations that change a routine or its draft are serialized per routine name
within this process. Drafts are keyed by name alone, so the same name in two
production schemas shares one fence.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from typing import Any

from routinegate.audit import AuditSink
from routinegate.catalog import PostgresRoutineCatalog, fold_identifier, validate_identifier
from routinegate.database import ConnectionPool
from routinegate.errors import NotFoundError, RoutineGateError, ValidationError
from routinegate.gate import AdmissionGate
from routinegate.logging import get_logger
from routinegate.metrics import get_metrics
from routinegate.models import (
    DeployResult,
    DraftInfo,
    RollbackResult,
    RoutineVersion,
    RowResult,
)
from routinegate.rewrite import rewrite_for_draft, rewrite_for_production
from routinegate.transactions import TransactionRegistry
from routinegate.versions import VersionStore

logger = get_logger(__name__)

DEFAULT_DRAFT_SCHEMA = "dbo_draft"
DEFAULT_BACKUP_COMMENT = "Pre-deployment backup"


class RoutineLifecycle:
    """Coordinates the gate, registry and version store for routine changes."""

    def __init__(
        self,
        *,
        pool: ConnectionPool,
        registry: TransactionRegistry,
        versions: VersionStore,
        gate: AdmissionGate,
        audit: AuditSink,
        catalog: PostgresRoutineCatalog | None = None,
        draft_schema: str = DEFAULT_DRAFT_SCHEMA,
        actor: str = "mcp-user",
        allowed_schemas: Iterable[str] | None = None,
        acquire_timeout_seconds: float = 5.0,
    ) -> None:
        self.pool = pool
        self.registry = registry
        self.versions = versions
        self.gate = gate
        self.audit = audit
        self.catalog = catalog or PostgresRoutineCatalog()
        self.draft_schema = validate_identifier(draft_schema, label="draft schema")
        self.actor = actor
        self.allowed_schemas = (
            {fold_identifier(schema) for schema in allowed_schemas}
            if allowed_schemas
            else None
        )
        self.acquire_timeout_seconds = acquire_timeout_seconds
        self._fences: dict[str, asyncio.Lock] = {}

    # -- helpers ---------------------------------------------------------

    def _fence(self, name: str) -> asyncio.Lock:
        return self._fences.setdefault(fold_identifier(name), asyncio.Lock())

    def _check_target(self, schema: str, name: str) -> tuple[str, str]:
        validate_identifier(schema, label="schema")
        validate_identifier(name, label="routine name")
        folded_schema = fold_identifier(schema)
        if folded_schema == fold_identifier(self.draft_schema):
            raise ValidationError(f"Schema {schema} is reserved for drafts")
        if self.allowed_schemas is not None and folded_schema not in self.allowed_schemas:
            raise ValidationError(f"Schema {schema} is not in the allowed schema list")
        return folded_schema, fold_identifier(name)

    @asynccontextmanager
    async def _audited(self, operation: str, details: dict[str, Any]) -> AsyncIterator[None]:
        try:
            yield
        except Exception as exc:
            error = exc.reason if isinstance(exc, RoutineGateError) else str(exc)
            self.audit.log(
                operation, actor=self.actor, success=False, details=details, error=error
            )
            raise
        self.audit.log(operation, actor=self.actor, success=True, details=details)

    async def _read_definition(self, schema: str, name: str) -> str | None:
        async with self.pool.connection(self.acquire_timeout_seconds) as conn:
            return await self.catalog.get_definition(conn, schema, name)

    async def ensure_draft_schema(self) -> None:
        """Create the draft schema if it does not exist yet."""
        async with self.pool.connection(self.acquire_timeout_seconds) as conn:
            await conn.execute(self.catalog.ensure_schema_statement(self.draft_schema))
        logger.info("draft_schema_ready", draft_schema=self.draft_schema)

    # -- drafts ----------------------------------------------------------

    async def create_draft(self, schema: str, name: str, definition: str) -> DraftInfo:
        """Stage a definition in the draft schema, replacing any earlier draft."""
        details: dict[str, Any] = {"schema": schema, "name": name}
        async with self._audited("create_draft", details):
            self._check_target(schema, name)
            verdict = self.gate.validate(definition)
            if not verdict.valid:
                get_metrics().statements_rejected_total.inc("create_draft")
                raise ValidationError(
                    "Definition rejected: " + "; ".join(verdict.reasons),
                    reasons=verdict.reasons,
                )
            draft_definition = rewrite_for_draft(definition, self.draft_schema, name)

            async with self._fence(name):
                async with self.pool.connection(self.acquire_timeout_seconds) as conn:
                    await conn.execute(self.catalog.drop_statement(self.draft_schema, name))
                    await conn.execute(draft_definition)

        logger.info("draft_created", schema=schema, routine=name, draft_schema=self.draft_schema)
        return DraftInfo(
            schema_name=schema,
            routine_name=name,
            draft_schema=self.draft_schema,
            qualified_name=f"{self.draft_schema}.{name}",
        )

    async def test_draft(
        self, schema: str, name: str, parameters: Mapping[str, Any] | None = None
    ) -> RowResult:
        """Invoke the draft with named parameters.

        The call runs inside an engine transaction that is always rolled back,
        so a draft that writes leaves nothing behind.
        """
        arguments = dict(parameters or {})
        details: dict[str, Any] = {"schema": schema, "name": name, "parameters": sorted(arguments)}
        async with self._audited("test_draft", details):
            self._check_target(schema, name)
            async with self.pool.connection(self.acquire_timeout_seconds) as conn:
                kind = await self.catalog.get_kind(conn, self.draft_schema, name)
                if kind is None:
                    raise NotFoundError(f"Draft {self.draft_schema}.{name} not found")
                statement, params = self.catalog.invocation(
                    self.draft_schema, name, kind, arguments
                )
                await conn.begin()
                try:
                    result = await conn.execute(statement, params)
                finally:
                    await conn.rollback()
        logger.info("draft_tested", schema=schema, routine=name, rowcount=result.rowcount)
        return result

    async def discard_draft(self, schema: str, name: str) -> None:
        """Drop a draft without deploying it."""
        details: dict[str, Any] = {"schema": schema, "name": name}
        async with self._audited("discard_draft", details):
            self._check_target(schema, name)
            async with self._fence(name):
                async with self.pool.connection(self.acquire_timeout_seconds) as conn:
                    kind = await self.catalog.get_kind(conn, self.draft_schema, name)
                    if kind is None:
                        raise NotFoundError(f"Draft {self.draft_schema}.{name} not found")
                    await conn.execute(self.catalog.drop_statement(self.draft_schema, name))
        logger.info("draft_discarded", schema=schema, routine=name)

    # -- deploy / rollback -----------------------------------------------

    async def deploy_draft(
        self, schema: str, name: str, comment: str | None = None
    ) -> DeployResult:
        """Back up production, swap in the draft and remove the draft.

        The backup is written before production is touched. If the swap fails
        its transaction is rolled back and both the draft and the backup stay
        where they are, so the deploy can be retried.
        """
        details: dict[str, Any] = {"schema": schema, "name": name}
        async with self._audited("deploy_draft", details):
            version_schema, version_name = self._check_target(schema, name)
            async with self._fence(name):
                draft_definition = await self._read_definition(self.draft_schema, name)
                if draft_definition is None:
                    raise NotFoundError(f"Draft {self.draft_schema}.{name} not found")
                current_definition = await self._read_definition(schema, name)

                backup_version: int | None = None
                if current_definition is not None:
                    backup_version = await self.versions.save_version(
                        version_schema,
                        version_name,
                        current_definition,
                        comment or DEFAULT_BACKUP_COMMENT,
                        created_by=self.actor,
                    )
                    details["backup_version"] = backup_version

                production_definition = rewrite_for_production(
                    draft_definition, self.draft_schema, schema
                )
                try:
                    async with self.registry.transaction(
                        f"deploy {schema}.{name}"
                    ) as transaction_id:
                        details["transaction_id"] = transaction_id
                        await self.registry.execute(
                            transaction_id, self.catalog.drop_statement(schema, name)
                        )
                        await self.registry.execute(transaction_id, production_definition)
                except RoutineGateError as exc:
                    get_metrics().deploys_total.inc("failed")
                    logger.error(
                        "deploy_failed",
                        schema=schema,
                        routine=name,
                        backup_version=backup_version,
                        error=exc.reason,
                    )
                    raise
                get_metrics().deploys_total.inc("committed")
                logger.info(
                    "deploy_committed",
                    schema=schema,
                    routine=name,
                    backup_version=backup_version,
                    transaction_id=transaction_id,
                )
                draft_removed = await self._remove_deployed_draft(name)
                details["draft_removed"] = draft_removed

        return DeployResult(
            schema_name=schema,
            routine_name=name,
            backup_version=backup_version,
            transaction_id=transaction_id,
            draft_removed=draft_removed,
        )

    async def _remove_deployed_draft(self, name: str) -> bool:
        try:
            async with self.pool.connection(self.acquire_timeout_seconds) as conn:
                await conn.execute(self.catalog.drop_statement(self.draft_schema, name))
        except RoutineGateError as exc:
            # Production already carries the new definition.
            logger.error(
                "draft_cleanup_failed",
                draft_schema=self.draft_schema,
                routine=name,
                error=exc.reason,
            )
            return False
        return True

    async def rollback(
        self, schema: str, name: str, version: int | None = None
    ) -> RollbackResult:
        """Restore a stored snapshot (the latest one when no version is given)."""
        details: dict[str, Any] = {"schema": schema, "name": name, "version": version}
        async with self._audited("rollback_routine", details):
            version_schema, version_name = self._check_target(schema, name)
            async with self._fence(name):
                snapshot: RoutineVersion
                if version is None:
                    snapshot = await self.versions.get_latest(version_schema, version_name)
                else:
                    snapshot = await self.versions.get_version(
                        version_schema, version_name, version
                    )
                details["restored_version"] = snapshot.version
                try:
                    async with self.registry.transaction(
                        f"rollback {schema}.{name}"
                    ) as transaction_id:
                        details["transaction_id"] = transaction_id
                        await self.registry.execute(
                            transaction_id, self.catalog.drop_statement(schema, name)
                        )
                        await self.registry.execute(transaction_id, snapshot.definition)
                except RoutineGateError as exc:
                    get_metrics().rollbacks_total.inc("failed")
                    logger.error(
                        "routine_rollback_failed",
                        schema=schema,
                        routine=name,
                        version=snapshot.version,
                        error=exc.reason,
                    )
                    raise
        get_metrics().rollbacks_total.inc("committed")
        logger.info(
            "routine_rolled_back",
            schema=schema,
            routine=name,
            version=snapshot.version,
            transaction_id=transaction_id,
        )
        return RollbackResult(
            schema_name=schema,
            routine_name=name,
            restored_version=snapshot.version,
            transaction_id=transaction_id,
        )

    async def list_versions(self, schema: str, name: str) -> list[RoutineVersion]:
        """Stored snapshots for a production routine, newest first."""
        version_schema, version_name = self._check_target(schema, name)
        return await self.versions.list_versions(version_schema, version_name)
