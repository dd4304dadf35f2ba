"""Version history for routine definitions, stored in SQLite or Postgres.

Blocking store work runs in a worker thread; the public API is async so the
lifecycle orchestrator can await it like any other database call. Writers are
serialized in-process by a lock, and the primary key on
``(schema_name, routine_name, version)`` rejects duplicate numbers written by
other processes.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable
from contextlib import suppress
from datetime import UTC, datetime
from threading import Lock
from typing import Any

import psycopg
from psycopg.rows import dict_row

from routinegate.errors import EngineError, NotFoundError
from routinegate.logging import get_logger
from routinegate.models import RoutineVersion

logger = get_logger(__name__)

MigrationStep = tuple[int, str, Callable[[], None]]

DEFAULT_RETENTION = 5
_SAVE_ATTEMPTS = 3


_SQLITE_PREFIX = "sqlite:///"


def _sqlite_path(dsn: str) -> str | None:
    """Return the sqlite file for a path-like DSN, or None for a psycopg one.

    ``sqlite:///<path>``, ``:memory:`` and bare paths select sqlite. URLs and
    libpq keyword strings (``host=db dbname=app``) select psycopg.
    """
    value = dsn.strip()
    if value.lower().startswith(_SQLITE_PREFIX):
        return value[len(_SQLITE_PREFIX) :]
    if value == ":memory:":
        return value
    if "://" in value or "=" in value:
        return None
    return value


def _is_postgres_dsn(dsn: str) -> bool:
    return _sqlite_path(dsn) is None


def _store_error(exc: Exception) -> EngineError:
    message = str(exc).strip() or type(exc).__name__
    sqlstate = getattr(exc, "sqlstate", None)
    details = {"sqlstate": sqlstate} if sqlstate else None
    return EngineError(f"Version store failure: {message}", details=details)


def _normalize_postgres_sql(sql: str) -> str:
    return sql.replace("?", "%s")


class _PostgresConnectionAdapter:
    def __init__(self, raw_conn: Any) -> None:
        self._raw_conn = raw_conn

    def execute(self, query: str, params: tuple[Any, ...] | list[Any] | None = None) -> Any:
        normalized = _normalize_postgres_sql(query)
        if params is None:
            return self._raw_conn.execute(normalized)
        return self._raw_conn.execute(normalized, params)

    def commit(self) -> None:
        self._raw_conn.commit()

    def rollback(self) -> None:
        self._raw_conn.rollback()

    def close(self) -> None:
        self._raw_conn.close()


_DUPLICATE_ERRORS: tuple[type[Exception], ...] = (
    sqlite3.IntegrityError,
    psycopg.errors.UniqueViolation,
)


class VersionStore:
    """Immutable, numbered snapshots of routine definitions."""

    def __init__(self, dsn: str, *, retention: int = DEFAULT_RETENTION) -> None:
        if retention < 1:
            raise ValueError("retention must keep at least one version")
        self.dsn = dsn
        self.retention = retention
        self._sqlite_path = _sqlite_path(dsn)
        self._is_postgres = self._sqlite_path is None
        self._conn: Any = None
        self._lock = Lock()
        self._ready = False

    # -- connection management -------------------------------------------

    @property
    def conn(self) -> Any:
        if self._conn is None:
            if self._is_postgres:
                raw_conn = psycopg.connect(self.dsn, row_factory=dict_row)
                self._conn = _PostgresConnectionAdapter(raw_conn)
            else:
                conn = sqlite3.connect(self._sqlite_path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._conn = conn
        return self._conn

    def _close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
            self._ready = False

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run blocking store work in a worker thread, mapping driver errors."""
        try:
            return await asyncio.to_thread(func, *args)
        except (sqlite3.Error, psycopg.Error) as exc:
            logger.error("version_store_failed", operation=func.__name__, error=str(exc))
            raise _store_error(exc) from exc

    async def close(self) -> None:
        await self._run(self._close)

    # -- schema ----------------------------------------------------------

    def _build_migrations(self) -> list[MigrationStep]:
        return [
            (1, "routine_versions", self._migration_routine_versions),
        ]

    def _ensure_store(self) -> None:
        with self._lock:
            if self._ready:
                return
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            self.conn.commit()
            rows = self.conn.execute("SELECT version FROM schema_migrations").fetchall()
            applied = {int(row["version"]) for row in rows}
            for version, name, handler in self._build_migrations():
                if version in applied:
                    continue
                self._apply_migration(version, name, handler)
            self._ready = True

    def _apply_migration(self, version: int, name: str, handler: Callable[[], None]) -> None:
        savepoint = f"version_store_migration_v{version}"
        self.conn.execute(f"SAVEPOINT {savepoint}")
        try:
            handler()
            self.conn.execute(
                "INSERT INTO schema_migrations (version, name) VALUES (?, ?)",
                (version, name),
            )
            self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            self.conn.commit()
        except Exception as exc:
            with suppress(Exception):
                self.conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            with suppress(Exception):
                self.conn.rollback()
            raise EngineError(f"Failed version store migration v{version} ({name})") from exc
        logger.info("version_store_migrated", version=version, name=name)

    def _migration_routine_versions(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS routine_versions (
                schema_name TEXT NOT NULL,
                routine_name TEXT NOT NULL,
                version INTEGER NOT NULL,
                definition TEXT NOT NULL,
                created_at TEXT NOT NULL,
                created_by TEXT NOT NULL DEFAULT '',
                comment TEXT,
                PRIMARY KEY (schema_name, routine_name, version)
            )
            """
        )
        self.conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_routine_versions_latest
            ON routine_versions(schema_name, routine_name, version DESC)
            """
        )

    async def ensure_store(self) -> None:
        """Create the backing table and index if they do not exist."""
        await self._run(self._ensure_store)

    # -- writes ----------------------------------------------------------

    def _save_version(
        self,
        schema: str,
        name: str,
        definition: str,
        comment: str | None,
        created_by: str,
    ) -> int:
        self._ensure_store()
        for attempt in range(1, _SAVE_ATTEMPTS + 1):
            with self._lock:
                try:
                    version = self._insert_next(schema, name, definition, comment, created_by)
                    self._prune(schema, name)
                    self.conn.commit()
                except _DUPLICATE_ERRORS:
                    self.conn.rollback()
                    logger.warning(
                        "version_number_conflict",
                        schema=schema,
                        routine=name,
                        attempt=attempt,
                    )
                    continue
                except Exception:
                    self.conn.rollback()
                    raise
            logger.info("routine_version_saved", schema=schema, routine=name, version=version)
            return version
        raise EngineError(f"Could not allocate a version number for {schema}.{name}")

    def _insert_next(
        self,
        schema: str,
        name: str,
        definition: str,
        comment: str | None,
        created_by: str,
    ) -> int:
        row = self.conn.execute(
            """
            SELECT COALESCE(MAX(version), 0) AS latest
            FROM routine_versions
            WHERE schema_name = ? AND routine_name = ?
            """,
            (schema, name),
        ).fetchone()
        version = int(row["latest"]) + 1
        self.conn.execute(
            """
            INSERT INTO routine_versions (
                schema_name, routine_name, version, definition,
                created_at, created_by, comment
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                schema,
                name,
                version,
                definition,
                datetime.now(UTC).isoformat(),
                created_by,
                comment,
            ),
        )
        return version

    def _prune(self, schema: str, name: str) -> None:
        self.conn.execute(
            """
            DELETE FROM routine_versions
            WHERE schema_name = ? AND routine_name = ?
              AND version NOT IN (
                SELECT version FROM routine_versions
                WHERE schema_name = ? AND routine_name = ?
                ORDER BY version DESC
                LIMIT ?
              )
            """,
            (schema, name, schema, name, self.retention),
        )

    async def save_version(
        self,
        schema: str,
        name: str,
        definition: str,
        comment: str | None = None,
        *,
        created_by: str = "",
    ) -> int:
        """Store a new snapshot and prune to the retention count.

        Returns the version number assigned to the snapshot.
        """
        return await self._run(
            self._save_version, schema, name, definition, comment, created_by
        )

    # -- reads -----------------------------------------------------------

    _SELECT = """
        SELECT schema_name, routine_name, version, definition,
               created_at, created_by, comment
        FROM routine_versions
    """

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> RoutineVersion | None:
        self._ensure_store()
        with self._lock:
            row = self.conn.execute(self._SELECT + sql, params).fetchone()
            if self._is_postgres:
                self.conn.commit()
        return self._row_to_version(row) if row is not None else None

    def _get_version(self, schema: str, name: str, version: int) -> RoutineVersion:
        found = self._fetch_one(
            "WHERE schema_name = ? AND routine_name = ? AND version = ?",
            (schema, name, version),
        )
        if found is None:
            raise NotFoundError(f"Version {version} of {schema}.{name} not found")
        return found

    def _get_latest(self, schema: str, name: str) -> RoutineVersion:
        found = self._fetch_one(
            "WHERE schema_name = ? AND routine_name = ? ORDER BY version DESC LIMIT 1",
            (schema, name),
        )
        if found is None:
            raise NotFoundError(f"No versions stored for {schema}.{name}")
        return found

    def _list_versions(self, schema: str, name: str) -> list[RoutineVersion]:
        self._ensure_store()
        with self._lock:
            rows = self.conn.execute(
                self._SELECT
                + "WHERE schema_name = ? AND routine_name = ? ORDER BY version DESC",
                (schema, name),
            ).fetchall()
            if self._is_postgres:
                self.conn.commit()
        return [self._row_to_version(row) for row in rows]

    async def get_version(self, schema: str, name: str, version: int) -> RoutineVersion:
        return await self._run(self._get_version, schema, name, version)

    async def get_latest(self, schema: str, name: str) -> RoutineVersion:
        return await self._run(self._get_latest, schema, name)

    async def list_versions(self, schema: str, name: str) -> list[RoutineVersion]:
        """Return every stored version, newest first."""
        return await self._run(self._list_versions, schema, name)

    @staticmethod
    def _row_to_version(row: Any) -> RoutineVersion:
        return RoutineVersion(
            schema_name=row["schema_name"],
            routine_name=row["routine_name"],
            version=int(row["version"]),
            definition=row["definition"],
            created_at=datetime.fromisoformat(row["created_at"]),
            created_by=row["created_by"] or "",
            comment=row["comment"],
        )
