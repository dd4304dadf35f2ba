"""Guarded execution of caller-supplied write statements."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from routinegate.audit import AuditSink
from routinegate.errors import LimitExceededError, RoutineGateError, ValidationError
from routinegate.gate import AdmissionGate
from routinegate.logging import get_logger
from routinegate.metrics import get_metrics
from routinegate.models import WriteResult
from routinegate.transactions import TransactionRegistry

logger = get_logger(__name__)

DEFAULT_MAX_ROWS_AFFECTED = 10_000
_AUDIT_STATEMENT_CHARS = 500


class WriteExecutor:
    """Runs write statements through the gate and a registry transaction.

    Without a transaction id each statement gets its own transaction, which
    commits on success and rolls back on any failure, including a row count
    above ``max_rows_affected``. With a transaction id the statement joins that
    transaction and failures leave it ACTIVE for the caller to resolve.
    """

    def __init__(
        self,
        *,
        gate: AdmissionGate,
        registry: TransactionRegistry,
        audit: AuditSink,
        max_rows_affected: int = DEFAULT_MAX_ROWS_AFFECTED,
        actor: str = "mcp-user",
    ) -> None:
        self.gate = gate
        self.registry = registry
        self.audit = audit
        self.max_rows_affected = max_rows_affected
        self.actor = actor

    def _admit(self, statement: str) -> None:
        verdict = self.gate.validate(statement)
        if not verdict.valid:
            get_metrics().statements_rejected_total.inc("execute_write")
            raise ValidationError(
                "Statement rejected: " + "; ".join(verdict.reasons),
                reasons=verdict.reasons,
            )
        if not self.gate.is_write(statement):
            raise ValidationError(
                "Only INSERT, UPDATE, DELETE, MERGE, TRUNCATE, CREATE, ALTER or DROP "
                "statements are accepted here"
            )

    def _check_limit(self, rows_affected: int) -> None:
        if rows_affected > self.max_rows_affected:
            raise LimitExceededError(
                f"Statement affected {rows_affected} rows, "
                f"more than the limit of {self.max_rows_affected}",
                details={"rows_affected": rows_affected, "limit": self.max_rows_affected},
            )

    async def execute(
        self,
        statement: str,
        params: Mapping[str, Any] | None = None,
        transaction_id: str | None = None,
    ) -> WriteResult:
        details: dict[str, Any] = {
            "statement": (statement or "")[:_AUDIT_STATEMENT_CHARS],
            "transaction_id": transaction_id,
        }
        try:
            self._admit(statement)
            if transaction_id is not None:
                result = await self.registry.execute(transaction_id, statement, params)
                self._check_limit(result.rowcount)
                outcome = WriteResult(
                    rows_affected=result.rowcount,
                    transaction_id=transaction_id,
                    committed=False,
                )
            else:
                async with self.registry.transaction("execute_write") as auto_id:
                    details["transaction_id"] = auto_id
                    result = await self.registry.execute(auto_id, statement, params)
                    self._check_limit(result.rowcount)
                outcome = WriteResult(
                    rows_affected=result.rowcount,
                    transaction_id=auto_id,
                    committed=True,
                )
        except RoutineGateError as exc:
            self.audit.log(
                "execute_write",
                actor=self.actor,
                success=False,
                details=details,
                error=exc.reason,
            )
            logger.warning("write_failed", code=exc.code, error=exc.reason)
            raise

        details["rows_affected"] = outcome.rows_affected
        self.audit.log("execute_write", actor=self.actor, success=True, details=details)
        logger.info(
            "write_executed",
            rows_affected=outcome.rows_affected,
            transaction_id=outcome.transaction_id,
            committed=outcome.committed,
        )
        return outcome
