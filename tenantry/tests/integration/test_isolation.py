from __future__ import annotations

from uuid import UUID

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from tenantry.core.errors import TenantSettingUnsetError
from tenantry.domain.context import ContextCarrier, UserRole, build_context, context_scope
from tenantry.persistence.rls import verify_enforcement
from tenantry.persistence.router import QueryRouter
from tenantry.services.provisioning import ProvisionedTenant, ProvisioningOrchestrator
from tenantry.services.tenants import delete_tenant_permanently
from tenantry.tests.utils.db import bypasses_row_security, create_user, isolated_factory


def _carrier(tenant: ProvisionedTenant, *, schema_name: str | None = None, user_id: str = "u-itest") -> ContextCarrier:
    return ContextCarrier(
        tenant_id=tenant.tenant_id,
        user_id=user_id,
        user_role=UserRole.ADMIN.value,
        schema_name=schema_name or tenant.schema_name,
        request_id="req-itest",
    )


async def _provision_pair(factory) -> tuple[ProvisionedTenant, ProvisionedTenant]:
    orchestrator = ProvisioningOrchestrator(factory)
    first = await orchestrator.provision(await create_user(factory), "free", "Isolation A")
    second = await orchestrator.provision(await create_user(factory), "free", "Isolation B")
    return first, second


async def _insert_contact(factory, tenant: ProvisionedTenant, name: str) -> None:
    async with context_scope(_carrier(tenant)):
        async with QueryRouter(factory).session() as handle:
            await handle.execute(
                "INSERT INTO contacts (name, type) VALUES (:name, 'customer')", {"name": name}
            )


@pytest.mark.asyncio
async def test_row_security_hides_rows_when_routed_to_foreign_schema() -> None:
    async with isolated_factory() as factory:
        if await bypasses_row_security(factory):
            pytest.skip("database role bypasses row security")
        tenant_a, tenant_b = await _provision_pair(factory)
        try:
            await _insert_contact(factory, tenant_a, "Ada")

            async with context_scope(_carrier(tenant_a)):
                async with QueryRouter(factory).session() as handle:
                    own = await handle.execute("SELECT name FROM contacts")
            assert [row["name"] for row in own] == ["Ada"]

            # Tenant B's identity pointed at tenant A's schema: only the policy stands in the way.
            async with context_scope(_carrier(tenant_b, schema_name=tenant_a.schema_name)):
                async with QueryRouter(factory).session() as handle:
                    foreign = await handle.execute("SELECT name FROM contacts")
            assert foreign == []
        finally:
            await delete_tenant_permanently(tenant_a.tenant_id, factory)
            await delete_tenant_permanently(tenant_b.tenant_id, factory)


@pytest.mark.asyncio
async def test_unscoped_query_is_refused() -> None:
    async with isolated_factory() as factory:
        if await bypasses_row_security(factory):
            pytest.skip("database role bypasses row security")
        tenant_a, tenant_b = await _provision_pair(factory)
        try:
            await _insert_contact(factory, tenant_a, "Ada")

            async with factory() as session:
                async with session.begin():
                    await verify_enforcement(session, f'"{tenant_a.schema_name}".contacts')

            async with factory() as session:
                with pytest.raises(DBAPIError) as exc_info:
                    async with session.begin():
                        await session.execute(text("SELECT set_config('app.tenant_id', '', true)"))
                        await session.execute(text(f'SELECT name FROM "{tenant_a.schema_name}".contacts'))
            assert "tenant context required" in str(exc_info.value)
        finally:
            await delete_tenant_permanently(tenant_a.tenant_id, factory)
            await delete_tenant_permanently(tenant_b.tenant_id, factory)


@pytest.mark.asyncio
async def test_failed_tenant_query_surfaces_as_setting_error() -> None:
    async with isolated_factory() as factory:
        if await bypasses_row_security(factory):
            pytest.skip("database role bypasses row security")
        tenant_a, tenant_b = await _provision_pair(factory)
        try:
            await _insert_contact(factory, tenant_a, "Ada")
            async with context_scope(_carrier(tenant_a)):
                with pytest.raises(TenantSettingUnsetError):
                    async with QueryRouter(factory).session() as handle:
                        await handle.execute("SELECT set_config('app.tenant_id', '', true)")
                        await handle.execute("SELECT name FROM contacts")
        finally:
            await delete_tenant_permanently(tenant_a.tenant_id, factory)
            await delete_tenant_permanently(tenant_b.tenant_id, factory)


@pytest.mark.asyncio
async def test_scope_does_not_leak_to_next_checkout() -> None:
    async with isolated_factory(pool_size=1) as factory:
        user_id = await create_user(factory)
        tenant = await ProvisioningOrchestrator(factory).provision(user_id, "free", "Leak Check")
        try:
            async with factory() as session:
                baseline = (await session.execute(text("SHOW search_path"))).scalar()

            async with context_scope(_carrier(tenant)):
                async with QueryRouter(factory).session() as handle:
                    assert tenant.schema_name in await handle.scalar("SHOW search_path")

            # Single pooled connection: this checkout reuses the one the tenant session released.
            async with factory() as session:
                search_path = (await session.execute(text("SHOW search_path"))).scalar()
                setting = (
                    await session.execute(text("SELECT current_setting('app.tenant_id', true)"))
                ).scalar()
            assert search_path == baseline
            assert setting in (None, "")
        finally:
            await delete_tenant_permanently(tenant.tenant_id, factory)


SHARED_ROW_ID = UUID("00000000-0000-4000-8000-000000000001")


async def _insert_contact_with_id(factory, tenant: ProvisionedTenant, name: str) -> None:
    async with context_scope(_carrier(tenant)):
        async with QueryRouter(factory).session() as handle:
            await handle.execute(
                "INSERT INTO contacts (id, name, type) VALUES (:id, :name, 'customer')",
                {"id": SHARED_ROW_ID, "name": name},
            )


@pytest.mark.asyncio
async def test_same_primary_key_resolves_per_tenant() -> None:
    async with isolated_factory() as factory:
        tenant_a, tenant_b = await _provision_pair(factory)
        try:
            await _insert_contact_with_id(factory, tenant_a, "Row of A")
            await _insert_contact_with_id(factory, tenant_b, "Row of B")

            seen = {}
            for tenant in (tenant_a, tenant_b):
                async with context_scope(_carrier(tenant)):
                    async with QueryRouter(factory).session() as handle:
                        seen[tenant.tenant_id] = await handle.execute(
                            "SELECT name, tenant_id FROM contacts WHERE id = :id", {"id": SHARED_ROW_ID}
                        )
            assert seen[tenant_a.tenant_id] == [{"name": "Row of A", "tenant_id": tenant_a.tenant_id}]
            assert seen[tenant_b.tenant_id] == [{"name": "Row of B", "tenant_id": tenant_b.tenant_id}]
        finally:
            await delete_tenant_permanently(tenant_a.tenant_id, factory)
            await delete_tenant_permanently(tenant_b.tenant_id, factory)


@pytest.mark.asyncio
async def test_next_tenant_on_reused_connection_sees_only_its_own_schema() -> None:
    async with isolated_factory(pool_size=1) as factory:
        orchestrator = ProvisioningOrchestrator(factory)
        tenant_a = await orchestrator.provision(await create_user(factory), "free", "Reuse A")
        tenant_b = await orchestrator.provision(await create_user(factory), "free", "Reuse B")
        try:
            await _insert_contact_with_id(factory, tenant_a, "Row of A")
            await _insert_contact_with_id(factory, tenant_b, "Row of B")

            async with context_scope(_carrier(tenant_a)):
                async with QueryRouter(factory).session() as handle:
                    assert [row["name"] for row in await handle.execute("SELECT name FROM contacts")] == ["Row of A"]

            # The only pooled connection was just used by tenant A.
            async with context_scope(_carrier(tenant_b)):
                async with QueryRouter(factory).session() as handle:
                    search_path = await handle.scalar("SHOW search_path")
                    setting = await handle.scalar("SELECT current_setting('app.tenant_id', true)")
                    rows = await handle.execute("SELECT name FROM contacts")
            assert tenant_b.schema_name in search_path
            assert tenant_a.schema_name not in search_path
            assert setting == tenant_b.tenant_id
            assert [row["name"] for row in rows] == ["Row of B"]
        finally:
            await delete_tenant_permanently(tenant_a.tenant_id, factory)
            await delete_tenant_permanently(tenant_b.tenant_id, factory)


@pytest.mark.asyncio
async def test_system_marker_as_tenant_id_never_reaches_the_database() -> None:
    async with isolated_factory() as factory:
        if await bypasses_row_security(factory):
            pytest.skip("database role bypasses row security")
        tenant_a, tenant_b = await _provision_pair(factory)
        try:
            await _insert_contact(factory, tenant_a, "Secret of A")

            with pytest.raises(ValueError):
                build_context(
                    tenant_id="SYSTEM_JOB", user_id="u-x", role=UserRole.ADMIN, schema_name=tenant_a.schema_name
                )

            # A carrier assembled by hand is refused by the router before any SQL runs.
            forged = ContextCarrier(
                tenant_id="SYSTEM_JOB",
                user_id="u-x",
                user_role=UserRole.ADMIN.value,
                schema_name=tenant_a.schema_name,
                request_id="req-forged",
            )
            async with context_scope(forged):
                with pytest.raises(ValueError):
                    async with QueryRouter(factory).session() as handle:
                        await handle.execute("SELECT name FROM contacts")
        finally:
            await delete_tenant_permanently(tenant_a.tenant_id, factory)
            await delete_tenant_permanently(tenant_b.tenant_id, factory)


@pytest.mark.asyncio
async def test_unaffiliated_users_are_hidden_from_tenants() -> None:
    async with isolated_factory() as factory:
        if await bypasses_row_security(factory):
            pytest.skip("database role bypasses row security")
        tenant_a, tenant_b = await _provision_pair(factory)
        stranger = await create_user(factory)
        try:
            async with context_scope(_carrier(tenant_a)):
                async with QueryRouter(factory).session(shared=True) as handle:
                    visible = await handle.execute("SELECT id FROM users WHERE id = :id", {"id": stranger})
                    claimed = await handle.session.execute(
                        text("UPDATE users SET tenant_id = :tenant WHERE id = :id"),
                        {"tenant": tenant_a.tenant_id, "id": stranger},
                    )
                    claimed_rows = claimed.rowcount
            assert visible == []
            assert claimed_rows == 0

            # Signup-time callers without a tenant still see ownerless rows.
            anonymous = build_context(tenant_id=None, user_id=stranger, role=UserRole.GUEST)
            async with context_scope(anonymous):
                async with QueryRouter(factory).session(shared=True) as handle:
                    own = await handle.execute("SELECT id, tenant_id FROM users WHERE id = :id", {"id": stranger})
            assert own == [{"id": stranger, "tenant_id": None}]
        finally:
            await delete_tenant_permanently(tenant_a.tenant_id, factory)
            await delete_tenant_permanently(tenant_b.tenant_id, factory)
