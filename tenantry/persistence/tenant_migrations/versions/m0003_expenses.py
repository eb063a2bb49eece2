from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.persistence.naming import quote_ident


NAME = "0003_expenses"


async def up(session: AsyncSession, schema_name: str) -> None:
    schema = quote_ident(schema_name, allow_shared=False)
    await session.execute(
        text(
            f"""
            CREATE TABLE {schema}.expenses (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                tenant_id TEXT NOT NULL DEFAULT public.get_current_tenant_id(),
                vendor_id UUID REFERENCES {schema}.contacts (id) ON DELETE SET NULL,
                category VARCHAR(100) NOT NULL,
                amount NUMERIC(15, 2) NOT NULL CHECK (amount >= 0),
                currency VARCHAR(3) NOT NULL DEFAULT 'USD',
                incurred_on DATE NOT NULL DEFAULT CURRENT_DATE,
                description TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
    )
    await session.execute(
        text(f"CREATE INDEX idx_expenses_category ON {schema}.expenses (category, incurred_on DESC)")
    )


async def down(session: AsyncSession, schema_name: str) -> None:
    schema = quote_ident(schema_name, allow_shared=False)
    await session.execute(text(f"DROP TABLE IF EXISTS {schema}.expenses"))
