"""Statically registered migration scripts applied to every tenant schema.

New scripts are added to ``MIGRATIONS`` explicitly; there is no directory
scanning, and the registry refuses to load if names are duplicated or out of
order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.persistence.tenant_migrations.versions import (
    m0001_finance_core,
    m0002_payments,
    m0003_expenses,
    m0004_insights_and_uploads,
    m0005_enable_row_security,
)


MigrationStep = Callable[[AsyncSession, str], Awaitable[None]]


@dataclass(frozen=True)
class TenantMigration:
    name: str
    up: MigrationStep
    down: MigrationStep


def validate_order(migrations: Sequence[TenantMigration]) -> tuple[TenantMigration, ...]:
    names = [migration.name for migration in migrations]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate tenant migration names: {names}")
    if names != sorted(names):
        raise ValueError(f"Tenant migrations must be registered in name order: {names}")
    return tuple(migrations)


def _from_module(module) -> TenantMigration:
    return TenantMigration(name=module.NAME, up=module.up, down=module.down)


MIGRATIONS: tuple[TenantMigration, ...] = validate_order(
    [
        _from_module(m0001_finance_core),
        _from_module(m0002_payments),
        _from_module(m0003_expenses),
        _from_module(m0004_insights_and_uploads),
        _from_module(m0005_enable_row_security),
    ]
)

# Tables a fully migrated tenant schema is expected to contain.
TENANT_TABLES: tuple[str, ...] = m0005_enable_row_security.PROTECTED_TABLES
