from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantry.core.errors import TenantNotFoundError
from tenantry.domain.context import UserRole, context_scope, maybe_current_context, system_context
from tenantry.domain.models import TENANT_STATUSES, Tenant
from tenantry.persistence import catalog
from tenantry.persistence.repos import schemas as schemas_repo
from tenantry.persistence.repos import tenants as tenants_repo
from tenantry.persistence.router import QueryRouter
from tenantry.persistence.tenant_migrations import TENANT_TABLES
from tenantry.services import audit


logger = logging.getLogger(__name__)


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant:
    # Service-level lookup: a missing tenant is an error, unlike the repo helper.
    tenant = await tenants_repo.get_tenant(session, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    return tenant


async def list_tenants(session: AsyncSession, status: str | None = None) -> list[dict[str, Any]]:
    if status is not None and status not in TENANT_STATUSES:
        raise ValueError(f"Unknown tenant status: {status}")
    return await tenants_repo.list_tenants(session, status=status)


async def set_status(session: AsyncSession, tenant_id: str, status: str) -> Tenant:
    # Administrative lifecycle change; the schema is untouched.
    if status not in TENANT_STATUSES:
        raise ValueError(f"Unknown tenant status: {status}")
    tenant = await get_tenant(session, tenant_id)
    previous = tenant.status
    if previous == status:
        return tenant
    await tenants_repo.update_status(session, tenant_id, status)
    await audit.record_event(
        session=session,
        event_type="tenant.status_changed",
        outcome="success",
        tenant_id=tenant_id,
        resource_type="tenant",
        resource_id=tenant_id,
        metadata={"from": previous, "to": status},
    )
    logger.info("tenant_status_changed tenant_id=%s from=%s to=%s", tenant_id, previous, status)
    return tenant


async def verify_schema(session: AsyncSession, tenant_id: str) -> dict[str, Any]:
    """Compare the tenant's physical tables against the migrated table set."""
    tenant = await get_tenant(session, tenant_id)
    exists = await catalog.schema_exists(session, tenant.schema_name)
    actual = await catalog.list_tables(session, tenant.schema_name) if exists else []
    missing = sorted(set(TENANT_TABLES) - set(actual))
    return {
        "schema_name": tenant.schema_name,
        "schema_exists": exists,
        "expected_tables": list(TENANT_TABLES),
        "actual_tables": actual,
        "missing_tables": missing,
        "valid": exists and not missing,
    }


async def tenant_statistics(session: AsyncSession, tenant_id: str) -> dict[str, Any]:
    # Counts come from the live tables, not planner estimates.
    tenant = await get_tenant(session, tenant_id)
    if not await catalog.schema_exists(session, tenant.schema_name):
        return {"schema_name": tenant.schema_name, "tables": {}, "total_rows": 0}
    counts = await catalog.table_row_counts(session, tenant.schema_name)
    return {"schema_name": tenant.schema_name, "tables": counts, "total_rows": sum(counts.values())}


async def delete_tenant_permanently(
    tenant_id: str,
    session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession] | None = None,
) -> str:
    """Drop the tenant's schema and then its metadata; returns the dropped schema name.

    The schema goes first so a failure can never leave a schema without its row.
    """
    router = QueryRouter(session_factory, verify_schema=False)
    ctx = system_context(UserRole.SYSTEM_PROVISIONING, tenant_id=tenant_id, parent=maybe_current_context())
    async with context_scope(ctx):
        async with router.session(shared=True) as handle:
            tenant = await get_tenant(handle.session, tenant_id)
            schema_name = tenant.schema_name

        async with router.session(shared=True) as handle:
            await schemas_repo.drop_schema(handle.session, schema_name)
        logger.warning("tenant_schema_dropped tenant_id=%s schema=%s", tenant_id, schema_name)

        async with router.session(shared=True) as handle:
            await tenants_repo.detach_users(handle.session, tenant_id)
            await tenants_repo.delete_subscription(handle.session, tenant_id)
            await tenants_repo.delete_tenant(handle.session, tenant_id)
            await audit.record_event(
                session=handle.session,
                event_type="tenant.deleted",
                outcome="success",
                tenant_id=tenant_id,
                resource_type="tenant",
                resource_id=tenant_id,
                metadata={"schema_name": schema_name},
            )
    logger.warning("tenant_deleted tenant_id=%s schema=%s", tenant_id, schema_name)
    return schema_name
