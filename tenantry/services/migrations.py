from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantry.core.errors import MigrationScriptError
from tenantry.domain.context import UserRole, context_scope, maybe_current_context, system_context
from tenantry.persistence import catalog
from tenantry.persistence.naming import validate_schema_name
from tenantry.persistence.repos import migrations as ledger_repo
from tenantry.persistence.router import QueryRouter
from tenantry.persistence.tenant_migrations import MIGRATIONS, TenantMigration, validate_order


logger = logging.getLogger(__name__)


@dataclass
class MigrationResult:
    schema_name: str
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class BatchMigrationResult:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    # Error messages per failed schema.
    failures: dict[str, list[str]] = field(default_factory=dict)

    @property
    def errors(self) -> list[str]:
        return [f"{schema}: {message}" for schema, messages in self.failures.items() for message in messages]


class MigrationRunner:
    """Applies the tenant script set to one schema or to every tenant schema.

    Each script runs in its own transaction together with its ledger insert,
    so a script is either fully applied and recorded or not applied at all.
    The first failure stops the remaining scripts for that schema only.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession] | None = None,
        migrations: Sequence[TenantMigration] | None = None,
    ) -> None:
        self._router = QueryRouter(session_factory, verify_schema=True)
        self._migrations = validate_order(migrations) if migrations is not None else MIGRATIONS

    def _resolve(self, migrations: Sequence[TenantMigration] | None) -> tuple[TenantMigration, ...]:
        # An explicit script list is re-validated; the default set was validated at import.
        return validate_order(migrations) if migrations is not None else self._migrations

    async def apply(
        self, schema_name: str, migrations: Sequence[TenantMigration] | None = None
    ) -> MigrationResult:
        validate_schema_name(schema_name)
        scripts = self._resolve(migrations)
        ctx = system_context(UserRole.SYSTEM_MIGRATION, schema_name=schema_name, parent=maybe_current_context())
        async with context_scope(ctx):
            return await self._apply(schema_name, scripts)

    async def _apply(self, schema_name: str, scripts: tuple[TenantMigration, ...]) -> MigrationResult:
        # Caller has already bound the SYSTEM_MIGRATION carrier for this schema.
        result = MigrationResult(schema_name=schema_name)

        async with self._router.session() as handle:
            await ledger_repo.ensure_ledger(handle.session, schema_name)
            applied = await ledger_repo.applied_names(handle.session, schema_name)

        for migration in scripts:
            if migration.name in applied:
                result.skipped.append(migration.name)
                continue

            logger.info("tenant_migration_start schema=%s migration=%s", schema_name, migration.name)
            try:
                async with self._router.session() as handle:
                    await migration.up(handle.session, schema_name)
                    await ledger_repo.record_applied(handle.session, schema_name, migration.name)
            except Exception as exc:  # noqa: BLE001 - any script failure is recorded, later scripts are skipped
                error = MigrationScriptError(schema_name, migration.name, str(exc))
                logger.error(
                    "tenant_migration_failed schema=%s migration=%s remaining_aborted=%d",
                    schema_name,
                    migration.name,
                    len(scripts) - len(result.executed) - len(result.skipped) - 1,
                    exc_info=exc,
                )
                result.errors.append(str(error))
                break

            applied.add(migration.name)
            result.executed.append(migration.name)
            logger.info("tenant_migration_applied schema=%s migration=%s", schema_name, migration.name)

        return result

    async def apply_all(self, migrations: Sequence[TenantMigration] | None = None) -> BatchMigrationResult:
        # Schemas are migrated one at a time; a failing schema is recorded and the sweep moves on.
        scripts = self._resolve(migrations)
        schemas = await self.list_schemas()
        summary = BatchMigrationResult(total=len(schemas))
        logger.info("tenant_migration_batch_start schemas=%d migrations=%d", len(schemas), len(scripts))

        for schema_name in schemas:
            try:
                result = await self.apply(schema_name, scripts)
            except Exception as exc:  # noqa: BLE001 - one tenant's failure must not stop the sweep
                summary.failed += 1
                summary.failures[schema_name] = [str(exc)]
                logger.error("tenant_migration_schema_failed schema=%s", schema_name, exc_info=exc)
                continue
            if result.errors:
                summary.failed += 1
                summary.failures[schema_name] = list(result.errors)
            else:
                summary.succeeded += 1

        logger.info(
            "tenant_migration_batch_done total=%d succeeded=%d failed=%d",
            summary.total,
            summary.succeeded,
            summary.failed,
        )
        return summary

    async def list_schemas(self) -> list[str]:
        # Discovered from the live catalog, not the tenants table, so orphaned schemas are migrated too.
        ctx = system_context(UserRole.SYSTEM_MIGRATION, parent=maybe_current_context())
        async with context_scope(ctx):
            async with self._router.session(shared=True) as handle:
                return await catalog.list_tenant_schemas(handle.session)

    async def pending(self, schema_name: str, migrations: Sequence[TenantMigration] | None = None) -> list[str]:
        # Read-only: a schema without a ledger reports every script as pending without creating one.
        validate_schema_name(schema_name)
        scripts = self._resolve(migrations)
        ctx = system_context(UserRole.SYSTEM_MIGRATION, schema_name=schema_name, parent=maybe_current_context())
        async with context_scope(ctx):
            async with self._router.session() as handle:
                if not await ledger_repo.ledger_exists(handle.session, schema_name):
                    return [migration.name for migration in scripts]
                applied = await ledger_repo.applied_names(handle.session, schema_name)
        return [migration.name for migration in scripts if migration.name not in applied]

    async def rollback_last(
        self, schema_name: str, migrations: Sequence[TenantMigration] | None = None
    ) -> str | None:
        """Revert the most recently recorded script. Operator use only; never called automatically."""
        validate_schema_name(schema_name)
        by_name = {migration.name: migration for migration in self._resolve(migrations)}
        ctx = system_context(UserRole.SYSTEM_MIGRATION, schema_name=schema_name, parent=maybe_current_context())
        async with context_scope(ctx):
            async with self._router.session() as handle:
                if not await ledger_repo.ledger_exists(handle.session, schema_name):
                    return None
                name = await ledger_repo.latest_entry(handle.session, schema_name)
                if name is None:
                    return None
                migration = by_name.get(name)
                if migration is None:
                    raise ValueError(f"Ledger entry {name} has no registered migration")
                await migration.down(handle.session, schema_name)
                await ledger_repo.delete_entry(handle.session, schema_name, name)
        logger.warning("tenant_migration_rolled_back schema=%s migration=%s", schema_name, name)
        return name
