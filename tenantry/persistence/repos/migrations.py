from __future__ import annotations

import time
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.persistence.naming import quote_ident


LEDGER_TABLE = "migrations"


def _ledger(schema_name: str) -> str:
    return f"{quote_ident(schema_name)}.{LEDGER_TABLE}"


async def ensure_ledger(session: AsyncSession, schema_name: str) -> None:
    # The ledger lives inside the tenant schema, not in the shared schema.
    await session.execute(
        text(
            f"""
            CREATE TABLE IF NOT EXISTS {_ledger(schema_name)} (
                id SERIAL PRIMARY KEY,
                name VARCHAR(255) NOT NULL UNIQUE,
                timestamp BIGINT NOT NULL,
                executed_at TIMESTAMP NOT NULL DEFAULT NOW()
            )
            """
        )
    )


async def applied_names(session: AsyncSession, schema_name: str) -> set[str]:
    result = await session.execute(text(f"SELECT name FROM {_ledger(schema_name)}"))
    return set(result.scalars().all())


async def list_entries(session: AsyncSession, schema_name: str) -> list[dict[str, Any]]:
    result = await session.execute(
        text(f"SELECT id, name, timestamp, executed_at FROM {_ledger(schema_name)} ORDER BY name")
    )
    return [dict(row) for row in result.mappings().all()]


async def record_applied(session: AsyncSession, schema_name: str, name: str) -> None:
    await session.execute(
        text(f"INSERT INTO {_ledger(schema_name)} (name, timestamp) VALUES (:name, :ts)"),
        {"name": name, "ts": int(time.time() * 1000)},
    )


async def latest_entry(session: AsyncSession, schema_name: str) -> str | None:
    result = await session.execute(
        text(f"SELECT name FROM {_ledger(schema_name)} ORDER BY name DESC LIMIT 1")
    )
    return result.scalar()


async def delete_entry(session: AsyncSession, schema_name: str, name: str) -> None:
    await session.execute(
        text(f"DELETE FROM {_ledger(schema_name)} WHERE name = :name"),
        {"name": name},
    )


async def ledger_exists(session: AsyncSession, schema_name: str) -> bool:
    result = await session.execute(
        text("SELECT to_regclass(:qualified) IS NOT NULL"),
        {"qualified": _ledger(schema_name)},
    )
    return bool(result.scalar())
