from __future__ import annotations

import argparse
import asyncio
import sys

from tenantry.core.logging import configure_logging
from tenantry.persistence.db import SessionLocal, engine
from tenantry.persistence.naming import quote_ident
from tenantry.persistence.rls import verify_enforcement
from tenantry.persistence.tenant_migrations import TENANT_TABLES


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check that row security rejects unscoped tenant queries")
    parser.add_argument("--schema", required=True, help="Tenant schema to check")
    parser.add_argument("--table", action="append", default=None, help="Table to check (repeatable; default: all)")
    return parser


async def _verify(args: argparse.Namespace) -> int:
    schema = quote_ident(args.schema, allow_shared=False)
    tables = args.table or list(TENANT_TABLES)
    unknown = sorted(set(tables) - set(TENANT_TABLES))
    if unknown:
        print(f"Unknown tenant tables: {', '.join(unknown)}", file=sys.stderr)
        return 1
    failed = 0
    try:
        async with SessionLocal() as session:
            for table in tables:
                qualified = f'{schema}."{table}"'
                async with session.begin():
                    try:
                        await verify_enforcement(session, qualified)
                    except RuntimeError as exc:
                        failed += 1
                        print(f"FAIL {qualified}: {exc}", file=sys.stderr)
                        continue
                print(f"ok   {qualified}")
    finally:
        await engine.dispose()
    return 0 if failed == 0 else 1


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_verify(args))
    except Exception as exc:  # noqa: BLE001 - surface verification failures clearly
        print(f"verify_rls failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
