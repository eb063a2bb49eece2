"""Alembic environment for the shared schema.

Tenant schemas are not managed here; they are migrated by
``tenantry.services.migrations.MigrationRunner``. The database URL comes from
``Settings.database_url`` and runs through the async engine, with the
revisions executed inside ``run_sync``.
"""

from __future__ import annotations

import asyncio
import logging
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from tenantry.core.config import get_settings
from tenantry.domain.context import UserRole
from tenantry.domain.models import Base


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata


def _get_database_url() -> str:
    return config.get_main_option("sqlalchemy.url") or get_settings().database_url


def run_migrations_offline() -> None:
    context.configure(
        url=_get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_schemas=False,
        version_table_schema=get_settings().shared_schema,
    )
    with context.begin_transaction():
        context.run_migrations()


def _do_run_migrations(connection: Connection) -> None:
    settings = get_settings()
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        version_table_schema=settings.shared_schema,
    )
    with context.begin_transaction():
        # Revisions that touch policy-protected shared tables run as a system operation.
        connection.execute(
            text("SELECT set_config(:setting, :value, true)"),
            {"setting": settings.tenant_setting_name, "value": UserRole.SYSTEM_MIGRATION.value},
        )
        context.run_migrations()


async def run_migrations_online() -> None:
    connectable = create_async_engine(_get_database_url(), poolclass=pool.NullPool)
    async with connectable.connect() as connection:
        await connection.run_sync(_do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
