"""Attach the tenant isolation policy to every tenant-owned table.

Tables created by earlier scripts are listed explicitly; scripts that add a
tenant table later must install the policy themselves.
"""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.persistence.naming import quote_ident
from tenantry.persistence.rls import drop_policy_statements, policy_statements


NAME = "0005_enable_row_security"

PROTECTED_TABLES = (
    "contacts",
    "invoices",
    "products",
    "orders",
    "payments",
    "expenses",
    "ai_insights",
    "upload_batches",
    "quarantine_records",
)


async def up(session: AsyncSession, schema_name: str) -> None:
    # Every table is qualified explicitly; the search path is not trusted inside migrations.
    schema = quote_ident(schema_name, allow_shared=False)
    for table in PROTECTED_TABLES:
        for statement in policy_statements(table, qualifier=schema):
            await session.execute(text(statement))


async def down(session: AsyncSession, schema_name: str) -> None:
    schema = quote_ident(schema_name, allow_shared=False)
    for table in reversed(PROTECTED_TABLES):
        for statement in drop_policy_statements(table, qualifier=schema):
            await session.execute(text(statement))
