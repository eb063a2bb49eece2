from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.core.config import get_settings
from tenantry.persistence.naming import quote_ident, tenant_schema_pattern, validate_schema_name


async def schema_exists(session: AsyncSession, schema_name: str) -> bool:
    result = await session.execute(
        text("SELECT EXISTS(SELECT 1 FROM information_schema.schemata WHERE schema_name = :name)"),
        {"name": schema_name},
    )
    return bool(result.scalar())


async def list_tenant_schemas(session: AsyncSession) -> list[str]:
    # LIKE treats "_" as a wildcard, so escape it and re-check with the strict pattern.
    prefix = get_settings().tenant_schema_prefix
    result = await session.execute(
        text(
            "SELECT schema_name FROM information_schema.schemata "
            "WHERE schema_name LIKE :pattern ESCAPE '\\' ORDER BY schema_name"
        ),
        {"pattern": f"{prefix}\\_%"},
    )
    pattern = tenant_schema_pattern(prefix)
    return [name for name in result.scalars().all() if pattern.match(name)]


async def list_tables(session: AsyncSession, schema_name: str) -> list[str]:
    validate_schema_name(schema_name)
    result = await session.execute(
        text("SELECT tablename FROM pg_tables WHERE schemaname = :schema ORDER BY tablename"),
        {"schema": schema_name},
    )
    return list(result.scalars().all())


async def table_row_counts(session: AsyncSession, schema_name: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    schema = quote_ident(schema_name)
    for table in await list_tables(session, schema_name):
        # Table names come from pg_tables, not user input, but stay quoted.
        quoted_table = '"' + table.replace('"', '""') + '"'
        result = await session.execute(text(f"SELECT COUNT(*) FROM {schema}.{quoted_table}"))
        counts[table] = int(result.scalar() or 0)
    return counts
