"""Runtime settings loaded from ``ROUTINEGATE_*`` environment variables."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, field_validator

from routinegate.audit import DEFAULT_BUFFER_SIZE, DEFAULT_FLUSH_INTERVAL_SECONDS
from routinegate.catalog import IDENTIFIER_RE
from routinegate.gate import DEFAULT_DENIED_KEYWORDS
from routinegate.lifecycle import DEFAULT_DRAFT_SCHEMA
from routinegate.transactions import DEFAULT_SWEEP_INTERVAL_SECONDS, DEFAULT_TIMEOUT_SECONDS
from routinegate.versions import DEFAULT_RETENTION
from routinegate.writes import DEFAULT_MAX_ROWS_AFFECTED

_TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_DATABASE_URL = "postgresql://localhost:5432/postgres"


class Settings(BaseModel):
    """Resolved configuration for one RoutineGate process."""

    database_url: str = DEFAULT_DATABASE_URL
    version_store_url: str | None = Field(
        default=None, description="Defaults to database_url when unset"
    )
    pool_min_size: int = Field(default=1, ge=0)
    pool_max_size: int = Field(default=10, ge=1)
    pool_acquire_timeout_seconds: float = Field(default=5.0, gt=0)
    transaction_timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    sweep_interval_seconds: float = Field(default=DEFAULT_SWEEP_INTERVAL_SECONDS, gt=0)
    max_rows_affected: int = Field(default=DEFAULT_MAX_ROWS_AFFECTED, ge=0)
    denied_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_DENIED_KEYWORDS))
    allowed_schemas: list[str] | None = None
    draft_schema: str = DEFAULT_DRAFT_SCHEMA
    version_retention: int = Field(default=DEFAULT_RETENTION, ge=1)
    enable_write_operations: bool = False
    enable_routine_modifications: bool = False
    audit_enabled: bool = True
    audit_log_dir: str = "./logs"
    audit_buffer_size: int = Field(default=DEFAULT_BUFFER_SIZE, ge=1)
    audit_flush_interval_seconds: float = Field(default=DEFAULT_FLUSH_INTERVAL_SECONDS, gt=0)
    actor: str = "mcp-user"
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("draft_schema")
    @classmethod
    def validate_draft_schema(cls, value: str) -> str:
        """Draft schema is interpolated into DDL, so it must be a bare identifier."""
        cleaned = value.strip()
        if not IDENTIFIER_RE.fullmatch(cleaned):
            raise ValueError("draft_schema must be a plain identifier")
        return cleaned

    @property
    def resolved_version_store_url(self) -> str:
        return self.version_store_url or self.database_url


def _get_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _get_list(name: str) -> list[str] | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    items = [part.strip() for part in raw.split(",") if part.strip()]
    return items or None


def load_settings() -> Settings:
    """Build settings from the environment, falling back to defaults."""
    return Settings(
        database_url=_get_str("ROUTINEGATE_DATABASE_URL", DEFAULT_DATABASE_URL),
        version_store_url=os.getenv("ROUTINEGATE_VERSION_STORE_URL") or None,
        pool_min_size=_get_int("ROUTINEGATE_POOL_MIN_SIZE", 1),
        pool_max_size=_get_int("ROUTINEGATE_POOL_MAX_SIZE", 10),
        pool_acquire_timeout_seconds=_get_float("ROUTINEGATE_POOL_ACQUIRE_TIMEOUT_SECONDS", 5.0),
        transaction_timeout_seconds=_get_float(
            "ROUTINEGATE_TRANSACTION_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS
        ),
        sweep_interval_seconds=_get_float(
            "ROUTINEGATE_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS
        ),
        max_rows_affected=_get_int("ROUTINEGATE_MAX_ROWS_AFFECTED", DEFAULT_MAX_ROWS_AFFECTED),
        denied_keywords=_get_list("ROUTINEGATE_DENIED_KEYWORDS") or list(DEFAULT_DENIED_KEYWORDS),
        allowed_schemas=_get_list("ROUTINEGATE_ALLOWED_SCHEMAS"),
        draft_schema=_get_str("ROUTINEGATE_DRAFT_SCHEMA", DEFAULT_DRAFT_SCHEMA),
        version_retention=_get_int("ROUTINEGATE_VERSION_RETENTION", DEFAULT_RETENTION),
        enable_write_operations=_get_bool("ROUTINEGATE_ENABLE_WRITE_OPERATIONS", False),
        enable_routine_modifications=_get_bool("ROUTINEGATE_ENABLE_ROUTINE_MODIFICATIONS", False),
        audit_enabled=_get_bool("ROUTINEGATE_AUDIT_ENABLED", True),
        audit_log_dir=_get_str("ROUTINEGATE_AUDIT_LOG_DIR", "./logs"),
        audit_buffer_size=_get_int("ROUTINEGATE_AUDIT_BUFFER_SIZE", DEFAULT_BUFFER_SIZE),
        audit_flush_interval_seconds=_get_float(
            "ROUTINEGATE_AUDIT_FLUSH_INTERVAL_SECONDS", DEFAULT_FLUSH_INTERVAL_SECONDS
        ),
        actor=_get_str("ROUTINEGATE_ACTOR", "mcp-user"),
        log_level=_get_str("ROUTINEGATE_LOG_LEVEL", "INFO"),
        log_json=_get_bool("ROUTINEGATE_LOG_JSON", True),
    )
