"""pytest fixtures for RoutineGate."""

from __future__ import annotations

import re
import sys
from collections.abc import AsyncIterator, Callable, Mapping
from pathlib import Path
from typing import Any

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from routinegate.audit import AuditSink
from routinegate.catalog import ROUTINE_DEFINITION_QUERY, ROUTINE_KIND_QUERY
from routinegate.database import Connection, ConnectionPool
from routinegate.errors import EngineError, PoolExhaustedError
from routinegate.gate import AdmissionGate
from routinegate.lifecycle import RoutineLifecycle
from routinegate.models import RowResult
from routinegate.rewrite import ROUTINE_DEFINITION_RE
from routinegate.transactions import TransactionRegistry
from routinegate.versions import VersionStore

_CREATE_SCHEMA_RE = re.compile(r"^CREATE SCHEMA IF NOT EXISTS (\w+)$", re.IGNORECASE)
_DROP_ROUTINE_RE = re.compile(r"^DROP ROUTINE IF EXISTS (\w+)\.(\w+)$", re.IGNORECASE)
_INVOKE_RE = re.compile(r"^(?:CALL|SELECT \* FROM)\s+(\w+)\.(\w+)\(", re.IGNORECASE)
_WRITE_RE = re.compile(r"^\s*(?:INSERT|UPDATE|DELETE|MERGE|TRUNCATE)\b", re.IGNORECASE)
_LITERAL_RE = re.compile(r"'([^']*)'")

RoutineKey = tuple[str, str]


def example_definition(label: str, schema: str = "dbo", name: str = "Example") -> str:
    """A trivial selecting function whose result carries ``label``."""
    return (
        f"CREATE FUNCTION {schema}.{name}(id integer)\n"
        "RETURNS TABLE(id integer, label text)\n"
        "LANGUAGE sql\n"
        f"AS $$ SELECT id, '{label}'::text $$"
    )


def _split_target(target: str) -> RoutineKey:
    parts = [part.strip().strip('"').lower() for part in target.split(".")]
    if len(parts) == 1:
        return "public", parts[0]
    return parts[0], parts[1]


class FakeEngine:
    """In-memory stand-in for a PostgreSQL catalog of routines."""

    def __init__(self) -> None:
        self.schemas: set[str] = {"public", "dbo"}
        self.routines: dict[RoutineKey, str] = {}
        self.statements: list[str] = []
        self.fail_when: Callable[[str], bool] | None = None
        self.fail_begin = False
        self.fail_commit = False
        self.next_rowcount = 1

    def define(self, schema: str, name: str, definition: str) -> None:
        self.routines[(schema.lower(), name.lower())] = definition

    def definition(self, schema: str, name: str) -> str | None:
        return self.routines.get((schema.lower(), name.lower()))


class FakeConnection:
    """Connection whose transactions stage routine changes until commit."""

    def __init__(self, engine: FakeEngine) -> None:
        self.engine = engine
        self.overlay: dict[RoutineKey, str | None] | None = None
        self.commits = 0
        self.rollbacks = 0

    @property
    def in_transaction(self) -> bool:
        return self.overlay is not None

    def _lookup(self, key: RoutineKey) -> str | None:
        if self.overlay is not None and key in self.overlay:
            return self.overlay[key]
        return self.engine.routines.get(key)

    def _store(self, key: RoutineKey, definition: str | None) -> None:
        if self.overlay is not None:
            self.overlay[key] = definition
        elif definition is None:
            self.engine.routines.pop(key, None)
        else:
            self.engine.routines[key] = definition

    async def begin(self) -> None:
        if self.engine.fail_begin:
            raise EngineError("could not start transaction")
        self.overlay = {}

    async def commit(self) -> None:
        if self.engine.fail_commit:
            raise EngineError("could not serialize access")
        for key, definition in (self.overlay or {}).items():
            if definition is None:
                self.engine.routines.pop(key, None)
            else:
                self.engine.routines[key] = definition
        self.overlay = None
        self.commits += 1

    async def rollback(self) -> None:
        self.overlay = None
        self.rollbacks += 1

    async def execute(
        self, statement: str, params: Mapping[str, Any] | None = None
    ) -> RowResult:
        self.engine.statements.append(statement)
        if self.engine.fail_when is not None and self.engine.fail_when(statement):
            raise EngineError(f"simulated failure: {statement.split()[0]}")
        params = dict(params or {})

        if statement in (ROUTINE_DEFINITION_QUERY, ROUTINE_KIND_QUERY):
            definition = self._lookup((params["schema"], params["name"]))
            if definition is None:
                return RowResult()
            if statement == ROUTINE_DEFINITION_QUERY:
                return RowResult(columns=["definition"], rows=[{"definition": definition}], rowcount=1)
            match = ROUTINE_DEFINITION_RE.match(definition)
            kind = "p" if match and match.group("kind").upper() == "PROCEDURE" else "f"
            return RowResult(columns=["kind"], rows=[{"kind": kind}], rowcount=1)

        if match := _CREATE_SCHEMA_RE.match(statement):
            self.engine.schemas.add(match.group(1).lower())
            return RowResult()

        if match := _DROP_ROUTINE_RE.match(statement):
            self._store((match.group(1).lower(), match.group(2).lower()), None)
            return RowResult()

        if match := ROUTINE_DEFINITION_RE.match(statement):
            key = _split_target(match.group("target"))
            if key[0] not in self.engine.schemas:
                raise EngineError(f'schema "{key[0]}" does not exist')
            replacing = re.search(r"\bOR\s+REPLACE\b", statement[: match.start("target")], re.I)
            if self._lookup(key) is not None and not replacing:
                raise EngineError(f'function "{key[1]}" already exists')
            self._store(key, statement)
            return RowResult()

        if match := _INVOKE_RE.match(statement):
            definition = self._lookup((match.group(1).lower(), match.group(2).lower()))
            if definition is None:
                raise EngineError(f"function {match.group(1)}.{match.group(2)} does not exist")
            literal = _LITERAL_RE.search(definition)
            row = {"id": params.get("id"), "label": literal.group(1) if literal else None}
            return RowResult(columns=["id", "label"], rows=[row], rowcount=1)

        if _WRITE_RE.match(statement):
            return RowResult(rowcount=self.engine.next_rowcount)

        return RowResult()


class FakePool(ConnectionPool):
    """Bounded pool of fake connections that never waits."""

    def __init__(self, engine: FakeEngine, size: int = 4) -> None:
        self.engine = engine
        self.size = size
        self.in_use: list[FakeConnection] = []
        self.acquired = 0
        self.released = 0
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.closed = True

    async def acquire(self, timeout: float | None = None) -> Connection:
        if len(self.in_use) >= self.size:
            raise PoolExhaustedError("No database connection available")
        conn = FakeConnection(self.engine)
        self.in_use.append(conn)
        self.acquired += 1
        return conn

    async def release(self, connection: Connection) -> None:
        assert isinstance(connection, FakeConnection)
        self.in_use.remove(connection)
        # The real pool discards an open transaction on return.
        connection.overlay = None
        self.released += 1


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def pool(engine: FakeEngine) -> FakePool:
    return FakePool(engine)


@pytest.fixture()
def make_pool(engine: FakeEngine) -> Callable[..., FakePool]:
    def _make(size: int = 4) -> FakePool:
        return FakePool(engine, size=size)

    return _make


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def registry(pool: FakePool, clock: FakeClock) -> TransactionRegistry:
    return TransactionRegistry(
        pool,
        timeout_seconds=300,
        sweep_interval_seconds=60,
        clock=clock,
    )


@pytest.fixture()
def gate() -> AdmissionGate:
    return AdmissionGate()


@pytest.fixture()
async def version_store(tmp_path: Path) -> AsyncIterator[VersionStore]:
    store = VersionStore(str(tmp_path / "versions.db"), retention=5)
    await store.ensure_store()
    yield store
    await store.close()


@pytest.fixture()
def audit_sink(tmp_path: Path) -> AuditSink:
    return AuditSink(tmp_path / "audit", buffer_size=100, flush_interval_seconds=30)


@pytest.fixture()
async def lifecycle(
    pool: FakePool,
    registry: TransactionRegistry,
    version_store: VersionStore,
    gate: AdmissionGate,
    audit_sink: AuditSink,
) -> RoutineLifecycle:
    orchestrator = RoutineLifecycle(
        pool=pool,
        registry=registry,
        versions=version_store,
        gate=gate,
        audit=audit_sink,
    )
    await orchestrator.ensure_draft_schema()
    return orchestrator


@pytest.fixture()
def definition_for() -> Callable[..., str]:
    return example_definition
