"""AI insight snapshots, upload batch tracking and the quarantine table for rejected rows."""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.persistence.naming import quote_ident


NAME = "0004_insights_and_uploads"


async def up(session: AsyncSession, schema_name: str) -> None:
    schema = quote_ident(schema_name, allow_shared=False)
    statements = [
        f"""
        CREATE TABLE {schema}.ai_insights (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL DEFAULT public.get_current_tenant_id(),
            kind VARCHAR(50) NOT NULL,
            payload JSONB NOT NULL,
            generated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        f"""
        CREATE TABLE {schema}.upload_batches (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL DEFAULT public.get_current_tenant_id(),
            source_type VARCHAR(30) NOT NULL,
            file_name VARCHAR(255),
            row_count INTEGER NOT NULL DEFAULT 0,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        f"""
        CREATE TABLE {schema}.quarantine_records (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL DEFAULT public.get_current_tenant_id(),
            batch_id UUID REFERENCES {schema}.upload_batches (id) ON DELETE CASCADE,
            source_type VARCHAR(30) NOT NULL,
            raw_data JSONB NOT NULL,
            errors JSONB NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
    ]
    for statement in statements:
        await session.execute(text(statement))


async def down(session: AsyncSession, schema_name: str) -> None:
    # Quarantine rows reference their batch, so they go first.
    schema = quote_ident(schema_name, allow_shared=False)
    for table in ("quarantine_records", "upload_batches", "ai_insights"):
        await session.execute(text(f"DROP TABLE IF EXISTS {schema}.{table}"))
