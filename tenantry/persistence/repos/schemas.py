from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.persistence.naming import quote_ident


async def create_schema(session: AsyncSession, schema_name: str) -> None:
    # No IF NOT EXISTS: an existing schema means a collision the caller must see.
    await session.execute(text(f"CREATE SCHEMA {quote_ident(schema_name, allow_shared=False)}"))


async def drop_schema(session: AsyncSession, schema_name: str) -> None:
    await session.execute(
        text(f"DROP SCHEMA IF EXISTS {quote_ident(schema_name, allow_shared=False)} CASCADE")
    )
