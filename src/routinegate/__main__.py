"""RoutineGate operator CLI.

Usage:
    python -m routinegate --version
    python -m routinegate versions dbo example
    python -m routinegate show dbo example --version 3
    python -m routinegate rollback dbo example [--version 3]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from routinegate.catalog import fold_identifier
from routinegate.config import Settings, load_settings
from routinegate.errors import RoutineGateError
from routinegate.logging import configure_logging
from routinegate.versions import VersionStore


async def _list_versions(settings: Settings, schema: str, name: str) -> list[dict[str, Any]]:
    store = VersionStore(settings.resolved_version_store_url, retention=settings.version_retention)
    try:
        versions = await store.list_versions(fold_identifier(schema), fold_identifier(name))
    finally:
        await store.close()
    return [
        {
            "version": item.version,
            "created_at": item.created_at.isoformat(),
            "created_by": item.created_by,
            "comment": item.comment,
            "definition_length": len(item.definition),
        }
        for item in versions
    ]


async def _show_version(settings: Settings, schema: str, name: str, version: int | None) -> str:
    store = VersionStore(settings.resolved_version_store_url, retention=settings.version_retention)
    try:
        if version is None:
            found = await store.get_latest(fold_identifier(schema), fold_identifier(name))
        else:
            found = await store.get_version(fold_identifier(schema), fold_identifier(name), version)
    finally:
        await store.close()
    return found.definition


async def _rollback(
    settings: Settings, schema: str, name: str, version: int | None
) -> dict[str, Any]:
    from routinegate.service import RoutineGate

    async with RoutineGate(settings) as gate:
        result = await gate.rollback_routine(schema, name, version)
    return result.model_dump(mode="json")


def _build_parser() -> argparse.ArgumentParser:
    from routinegate import __version__

    parser = argparse.ArgumentParser(
        prog="routinegate",
        description="RoutineGate: guarded lifecycle management for database routines",
    )
    parser.add_argument(
        "--version", "-v", action="version", version=f"RoutineGate {__version__}"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    versions = commands.add_parser("versions", help="List stored versions of a routine")
    versions.add_argument("schema")
    versions.add_argument("name")

    show = commands.add_parser("show", help="Print a stored routine definition")
    show.add_argument("schema")
    show.add_argument("name")
    show.add_argument("--version", dest="routine_version", type=int, default=None)

    rollback = commands.add_parser("rollback", help="Restore a stored routine version")
    rollback.add_argument("schema")
    rollback.add_argument("name")
    rollback.add_argument("--version", dest="routine_version", type=int, default=None)
    return parser


def main() -> None:
    """CLI entrypoint."""
    args = _build_parser().parse_args()
    settings = load_settings()
    configure_logging(settings.log_level, json=settings.log_json)

    try:
        if args.command == "versions":
            payload = asyncio.run(_list_versions(settings, args.schema, args.name))
            print(json.dumps(payload, indent=2))
        elif args.command == "show":
            print(asyncio.run(_show_version(settings, args.schema, args.name, args.routine_version)))
        elif args.command == "rollback":
            if not settings.enable_routine_modifications:
                # Operator rollbacks bypass the agent-facing switch.
                settings = settings.model_copy(update={"enable_routine_modifications": True})
            payload = asyncio.run(
                _rollback(settings, args.schema, args.name, args.routine_version)
            )
            print(json.dumps(payload, indent=2))
    except RoutineGateError as exc:
        print(f"{exc.code}: {exc.reason}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
