from __future__ import annotations

import argparse
import asyncio
import sys

from tenantry.core.logging import configure_logging
from tenantry.persistence.db import engine
from tenantry.services.migrations import MigrationRunner


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Apply tenant schema migrations")
    parser.add_argument("--schema", default=None, help="Migrate a single tenant schema (default: all)")
    parser.add_argument("--status", action="store_true", help="Print pending migrations without applying")
    parser.add_argument(
        "--rollback-last",
        action="store_true",
        help="Revert the most recent migration of --schema (manual recovery only)",
    )
    return parser


async def _status(runner: MigrationRunner, schemas: list[str]) -> int:
    for schema_name in schemas:
        pending = await runner.pending(schema_name)
        print(f"{schema_name}: {len(pending)} pending")
        for name in pending:
            print(f"  - {name}")
    return 0


async def _migrate(args: argparse.Namespace) -> int:
    runner = MigrationRunner()
    try:
        if args.rollback_last:
            if not args.schema:
                print("--rollback-last requires --schema", file=sys.stderr)
                return 1
            name = await runner.rollback_last(args.schema)
            print(f"{args.schema}: rolled back {name}" if name else f"{args.schema}: nothing to roll back")
            return 0

        schemas = [args.schema] if args.schema else await runner.list_schemas()
        if args.status:
            return await _status(runner, schemas)

        if args.schema:
            result = await runner.apply(args.schema)
            print(f"{args.schema}: executed={len(result.executed)} skipped={len(result.skipped)}")
            for error in result.errors:
                print(f"  error: {error}", file=sys.stderr)
            return 0 if result.ok else 1

        summary = await runner.apply_all()
        print(f"schemas={summary.total} succeeded={summary.succeeded} failed={summary.failed}")
        for error in summary.errors:
            print(f"  error: {error}", file=sys.stderr)
        return 0 if summary.failed == 0 else 1
    finally:
        await engine.dispose()


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_migrate(args))
    except Exception as exc:  # noqa: BLE001 - surface migration failures clearly
        print(f"migrate_tenants failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
