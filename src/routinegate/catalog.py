"""PostgreSQL catalog access for stored procedures and functions."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Literal

from routinegate.database import Connection
from routinegate.errors import ValidationError

RoutineKind = Literal["function", "procedure"]

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

ROUTINE_DEFINITION_QUERY = """
SELECT pg_get_functiondef(p.oid) AS definition
FROM pg_proc p
JOIN pg_namespace n ON n.oid = p.pronamespace
WHERE n.nspname = %(schema)s AND p.proname = %(name)s
ORDER BY p.oid
LIMIT 1
""".strip()

ROUTINE_KIND_QUERY = """
SELECT p.prokind AS kind
FROM pg_proc p
JOIN pg_namespace n ON n.oid = p.pronamespace
WHERE n.nspname = %(schema)s AND p.proname = %(name)s
ORDER BY p.oid
LIMIT 1
""".strip()

_PROKIND: dict[str, RoutineKind] = {"f": "function", "p": "procedure"}


def validate_identifier(value: str, *, label: str = "identifier") -> str:
    """Reject anything that is not a plain SQL identifier."""
    if not isinstance(value, str) or not IDENTIFIER_RE.fullmatch(value):
        raise ValidationError(f"Invalid {label}: {value!r}")
    return value


def fold_identifier(value: str) -> str:
    """Fold an unquoted identifier the way Postgres stores it."""
    return value.lower()


class PostgresRoutineCatalog:
    """Reads routine metadata and builds routine DDL for PostgreSQL."""

    async def get_definition(self, conn: Connection, schema: str, name: str) -> str | None:
        result = await conn.execute(
            ROUTINE_DEFINITION_QUERY,
            {"schema": fold_identifier(schema), "name": fold_identifier(name)},
        )
        if not result.rows:
            return None
        return result.rows[0].get("definition")

    async def get_kind(self, conn: Connection, schema: str, name: str) -> RoutineKind | None:
        result = await conn.execute(
            ROUTINE_KIND_QUERY,
            {"schema": fold_identifier(schema), "name": fold_identifier(name)},
        )
        if not result.rows:
            return None
        return _PROKIND.get(str(result.rows[0].get("kind")))

    def drop_statement(self, schema: str, name: str) -> str:
        validate_identifier(schema, label="schema")
        validate_identifier(name, label="routine name")
        return f"DROP ROUTINE IF EXISTS {schema}.{name}"

    def ensure_schema_statement(self, schema: str) -> str:
        validate_identifier(schema, label="schema")
        return f"CREATE SCHEMA IF NOT EXISTS {schema}"

    def invocation(
        self,
        schema: str,
        name: str,
        kind: RoutineKind,
        parameters: Mapping[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        """Build a named-notation call and its bound parameters."""
        validate_identifier(schema, label="schema")
        validate_identifier(name, label="routine name")
        for key in parameters:
            validate_identifier(key, label="parameter name")
        arguments = ", ".join(f"{key} => %({key})s" for key in parameters)
        if kind == "procedure":
            statement = f"CALL {schema}.{name}({arguments})"
        else:
            statement = f"SELECT * FROM {schema}.{name}({arguments})"
        return statement, dict(parameters)
