"""Core finance tables: contacts, invoices, products, orders."""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.persistence.naming import quote_ident


NAME = "0001_finance_core"


async def up(session: AsyncSession, schema_name: str) -> None:
    schema = quote_ident(schema_name, allow_shared=False)
    statements = [
        f"""
        CREATE TABLE {schema}.contacts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL DEFAULT public.get_current_tenant_id(),
            name VARCHAR(255) NOT NULL,
            type VARCHAR(20) NOT NULL,
            contact_info JSONB,
            tags TEXT[],
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT valid_contact_type CHECK (type IN ('customer', 'vendor'))
        )
        """,
        f"""
        CREATE TABLE {schema}.invoices (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL DEFAULT public.get_current_tenant_id(),
            invoice_number VARCHAR(100) NOT NULL,
            customer_name VARCHAR(255) NOT NULL,
            customer_email VARCHAR(255),
            amount NUMERIC(15, 2) NOT NULL CHECK (amount >= 0),
            currency VARCHAR(3) NOT NULL DEFAULT 'USD',
            tax_amount NUMERIC(15, 2) NOT NULL DEFAULT 0 CHECK (tax_amount >= 0),
            total_amount NUMERIC(15, 2) GENERATED ALWAYS AS (amount + tax_amount) STORED,
            issue_date DATE NOT NULL DEFAULT CURRENT_DATE,
            due_date DATE,
            status VARCHAR(20) NOT NULL DEFAULT 'draft',
            notes TEXT,
            metadata JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_invoices_number UNIQUE (tenant_id, invoice_number),
            CONSTRAINT valid_invoice_status CHECK (status IN ('draft', 'sent', 'paid', 'overdue', 'cancelled')),
            CONSTRAINT valid_currency CHECK (currency ~ '^[A-Z]{{3}}$')
        )
        """,
        f"CREATE INDEX idx_invoices_status ON {schema}.invoices (status)",
        f"CREATE INDEX idx_invoices_due_date ON {schema}.invoices (due_date) WHERE status <> 'paid'",
        f"CREATE INDEX idx_invoices_created ON {schema}.invoices (created_at DESC)",
        f"""
        CREATE TABLE {schema}.products (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL DEFAULT public.get_current_tenant_id(),
            name VARCHAR(255) NOT NULL,
            price NUMERIC(15, 2) NOT NULL DEFAULT 0,
            stock INTEGER NOT NULL DEFAULT 0
        )
        """,
        f"""
        CREATE TABLE {schema}.orders (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL DEFAULT public.get_current_tenant_id(),
            channel VARCHAR(50) NOT NULL,
            amount NUMERIC(15, 2) NOT NULL,
            status VARCHAR(20) NOT NULL,
            items JSONB NOT NULL DEFAULT '[]'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
    ]
    for statement in statements:
        await session.execute(text(statement))


async def down(session: AsyncSession, schema_name: str) -> None:
    # Reverse creation order.
    schema = quote_ident(schema_name, allow_shared=False)
    for table in ("orders", "products", "invoices", "contacts"):
        await session.execute(text(f"DROP TABLE IF EXISTS {schema}.{table}"))
