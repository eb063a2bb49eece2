from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.persistence.naming import quote_ident


NAME = "0002_payments"


async def up(session: AsyncSession, schema_name: str) -> None:
    schema = quote_ident(schema_name, allow_shared=False)
    await session.execute(
        text(
            f"""
            CREATE TABLE {schema}.payments (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                tenant_id TEXT NOT NULL DEFAULT public.get_current_tenant_id(),
                invoice_id UUID REFERENCES {schema}.invoices (id) ON DELETE SET NULL,
                amount NUMERIC(15, 2) NOT NULL CHECK (amount > 0),
                currency VARCHAR(3) NOT NULL DEFAULT 'USD',
                method VARCHAR(30) NOT NULL DEFAULT 'bank_transfer',
                paid_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                reference VARCHAR(255),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
    )
    await session.execute(text(f"CREATE INDEX idx_payments_invoice ON {schema}.payments (invoice_id)"))


async def down(session: AsyncSession, schema_name: str) -> None:
    schema = quote_ident(schema_name, allow_shared=False)
    await session.execute(text(f"DROP TABLE IF EXISTS {schema}.payments"))
