"""Pydantic models for RoutineGate.

This module defines the data structures passed between components:
- Admission gate verdicts
- Statement results and transaction snapshots
- Stored routine versions and lifecycle outcomes
- Audit entries
- Tool call arguments and responses

All models use Pydantic for validation and serialization.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StatementKind(StrEnum):
    """Read/write classification of a raw statement."""

    READ = "read"
    WRITE = "write"


class TransactionState(StrEnum):
    """Lifecycle state of a registry-owned transaction."""

    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class ValidationResult(BaseModel):
    """Admission gate verdict.

    Attributes:
        valid: True when no rule rejected the statement.
        reasons: Violation messages in the order the rules fired.
    """

    valid: bool = Field(..., description="Whether the statement is admitted")
    reasons: list[str] = Field(default_factory=list, description="Violation reasons")


class RowResult(BaseModel):
    """Rows and row count returned by one statement."""

    columns: list[str] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    rowcount: int = Field(default=0, description="Rows returned or affected")

    @field_validator("rowcount")
    @classmethod
    def clamp_rowcount(cls, value: int) -> int:
        """Drivers report -1 when the count is unknown."""
        return max(value, 0)


class TransactionInfo(BaseModel):
    """Point-in-time view of a registry transaction."""

    transaction_id: str
    state: TransactionState
    started_at: datetime
    statement_count: int = 0
    description: str | None = None


class RoutineVersion(BaseModel):
    """Immutable snapshot of a routine definition.

    Attributes:
        schema_name: Production schema the routine lives in.
        routine_name: Routine name within the schema.
        version: Positive, strictly increasing per (schema, name).
        definition: Full definition text as read from the catalog.
        created_at: When the snapshot was stored.
        created_by: Identity that triggered the snapshot.
        comment: Optional free-text note.
    """

    schema_name: str
    routine_name: str
    version: int = Field(..., ge=1)
    definition: str
    created_at: datetime
    created_by: str = ""
    comment: str | None = None


class DraftInfo(BaseModel):
    """Where a draft was staged."""

    schema_name: str
    routine_name: str
    draft_schema: str
    qualified_name: str


class DeployResult(BaseModel):
    """Outcome of a committed deploy.

    ``backup_version`` is None on the first deploy of a routine, when there was
    no production definition to back up.
    """

    schema_name: str
    routine_name: str
    backup_version: int | None = None
    transaction_id: str
    draft_removed: bool = True


class RollbackResult(BaseModel):
    """Outcome of a committed rollback."""

    schema_name: str
    routine_name: str
    restored_version: int
    transaction_id: str


class WriteResult(BaseModel):
    """Outcome of the write-statement path."""

    rows_affected: int
    transaction_id: str
    committed: bool = Field(..., description="True when the statement was auto-committed")


class AuditEntry(BaseModel):
    """One append-only audit record."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    operation: str
    actor: str
    details: dict[str, Any] = Field(default_factory=dict)
    success: bool
    error: str | None = None


class ToolCallRequest(BaseModel):
    """Incoming tool call from the dispatch layer."""

    tool_name: str = Field(..., description="Tool name to invoke")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Tool arguments")

    @field_validator("tool_name")
    @classmethod
    def validate_tool_name(cls, value: str) -> str:
        """Ensure tool names are non-empty and bounded in length."""
        if not value or not value.strip():
            raise ValueError("tool_name must be non-empty")
        if len(value) > 128:
            raise ValueError("tool_name too long (max 128 characters)")
        return value.strip()


class ToolResult(BaseModel):
    """Response returned for every tool call, successful or not."""

    success: bool
    result: Any | None = None
    error: str | None = None
    error_code: str | None = None


class RoutineRef(BaseModel):
    """Arguments naming one production routine."""

    schema_name: str = Field(..., alias="schema")
    routine_name: str = Field(..., alias="name")

    model_config = ConfigDict(populate_by_name=True)


class CreateDraftArgs(RoutineRef):
    definition: str = Field(..., min_length=1)


class DraftTestArgs(RoutineRef):
    parameters: dict[str, Any] = Field(default_factory=dict)


class DeployDraftArgs(RoutineRef):
    comment: str | None = None


class RollbackRoutineArgs(RoutineRef):
    version: int | None = Field(default=None, ge=1)


class BeginTransactionArgs(BaseModel):
    description: str | None = Field(default=None, max_length=512)


class TransactionRef(BaseModel):
    transaction_id: str = Field(..., min_length=1)


class ExecuteWriteArgs(BaseModel):
    statement: str
    params: dict[str, Any] | None = None
    transaction_id: str | None = None
