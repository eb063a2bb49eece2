from __future__ import annotations

import pytest
from pydantic import ValidationError

from tenantry.core.config import Settings
from tenantry.domain.context import ContextCarrier, UserRole, build_context, system_context
from tenantry.persistence.rls import (
    PUBLIC_ACCESS,
    is_tenant_setting_error,
    policy_statements,
    setting_function_statements,
    tenant_setting_value,
    verify_enforcement,
)
from tenantry.tests.utils.fakes import FakeResult, FakeSessionFactory, db_error


def test_setting_value_per_carrier_kind() -> None:
    tenant = build_context(
        tenant_id="t-1", user_id="u-1", role=UserRole.STAFF, schema_name="tenant_acme_co_1a2b3c4d"
    )
    anonymous = build_context(tenant_id=None, user_id="u-2", role=UserRole.GUEST)
    system = system_context(UserRole.SYSTEM_MIGRATION, tenant_id="t-1")
    assert tenant_setting_value(tenant) == "t-1"
    assert tenant_setting_value(anonymous) == PUBLIC_ACCESS
    # System carriers are marked by role even when a tenant is attached.
    assert tenant_setting_value(system) == "SYSTEM_MIGRATION"


def test_setting_value_refuses_system_marker_as_tenant_id() -> None:
    forged = ContextCarrier(
        tenant_id="SYSTEM_JOB",
        user_id="u-1",
        user_role=UserRole.ADMIN.value,
        schema_name="tenant_acme_co_1a2b3c4d",
        request_id="req-1",
    )
    with pytest.raises(ValueError):
        tenant_setting_value(forged)


def test_setting_functions_use_configured_setting_name() -> None:
    current_tenant, system_operation = setting_function_statements("tenantry.current_tenant")
    assert "current_setting('tenantry.current_tenant', true)" in current_tenant
    assert "tenant context required: tenantry.current_tenant not set" in current_tenant
    assert "ERRCODE = '42501'" in current_tenant
    assert "current_setting('tenantry.current_tenant', true), '') LIKE 'SYSTEM\\_%'" in system_operation


def test_policy_statements_force_row_security() -> None:
    statements = policy_statements("contacts", qualifier='"tenant_acme_co_1a2b3c4d"')
    assert statements[0] == 'ALTER TABLE "tenant_acme_co_1a2b3c4d"."contacts" ENABLE ROW LEVEL SECURITY'
    assert statements[1] == 'ALTER TABLE "tenant_acme_co_1a2b3c4d"."contacts" FORCE ROW LEVEL SECURITY'
    create = statements[-1]
    assert create.startswith("CREATE POLICY tenant_isolation_contacts")
    assert "USING (public.is_system_operation() OR tenant_id::text = public.get_current_tenant_id())" in create
    assert "WITH CHECK (public.is_system_operation() OR" in create


def test_policy_statements_for_unowned_rows() -> None:
    create = policy_statements("users", qualifier='"public"', allow_unowned=True)[-1]
    # Ownerless rows are reachable only without a tenant, never from another tenant's context.
    assert "USING ((tenant_id IS NULL AND public.get_current_tenant_id() = 'PUBLIC_ACCESS') OR public.is_system_operation()" in create
    assert "WITH CHECK ((tenant_id IS NULL AND public.get_current_tenant_id() = 'PUBLIC_ACCESS') OR" in create


def test_tenant_setting_error_detection() -> None:
    assert is_tenant_setting_error(db_error("tenant context required: app.tenant_id not set", "42501"))
    assert not is_tenant_setting_error(db_error("permission denied for table contacts", "42501"))
    assert not is_tenant_setting_error(RuntimeError("tenant context required"))


def _catalog_responder(*, forced: bool, has_rows: bool, refuses: bool):
    def _respond(sql: str, params: dict):
        if "FROM pg_class" in sql:
            return FakeResult(rows=[{"relrowsecurity": True, "relforcerowsecurity": forced}])
        if sql.startswith("SELECT EXISTS(SELECT 1 FROM"):
            return FakeResult(scalar=has_rows)
        if sql.startswith("SELECT 1 FROM") and refuses:
            raise db_error("tenant context required: app.tenant_id not set", "42501", sql)
        return None

    return _respond


TABLE = '"tenant_acme_co_1a2b3c4d"."contacts"'


@pytest.mark.asyncio
async def test_verify_enforcement_accepts_refused_query() -> None:
    session = FakeSessionFactory(responder=_catalog_responder(forced=True, has_rows=True, refuses=True))()
    await verify_enforcement(session, TABLE)
    assert session.events == ["savepoint", "rollback_savepoint"] * 2


@pytest.mark.asyncio
async def test_verify_enforcement_flags_leaking_table() -> None:
    session = FakeSessionFactory(responder=_catalog_responder(forced=True, has_rows=True, refuses=False))()
    with pytest.raises(RuntimeError):
        await verify_enforcement(session, TABLE)


@pytest.mark.asyncio
async def test_verify_enforcement_requires_forced_row_security() -> None:
    session = FakeSessionFactory(responder=_catalog_responder(forced=False, has_rows=False, refuses=False))()
    with pytest.raises(RuntimeError):
        await verify_enforcement(session, TABLE)


@pytest.mark.asyncio
async def test_verify_enforcement_skips_check_on_empty_table() -> None:
    session = FakeSessionFactory(responder=_catalog_responder(forced=True, has_rows=False, refuses=False))()
    await verify_enforcement(session, TABLE)
    assert not any(sql.startswith("SELECT 1 FROM") for sql in session.sql())


@pytest.mark.asyncio
async def test_verify_enforcement_leaves_caller_setting_untouched() -> None:
    # Every setting change happens in a savepoint that is rolled back, never released.
    session = FakeSessionFactory(responder=_catalog_responder(forced=True, has_rows=False, refuses=False))()
    await verify_enforcement(session, TABLE)
    assert "release" not in session.events
    set_calls = [params["value"] for sql, params in session.statements if "set_config" in sql]
    assert set_calls == ["SYSTEM_READONLY"]
    assert session.events == ["savepoint", "rollback_savepoint"]


@pytest.mark.parametrize("name", ["tenant_id", "app.tenant_id'; DROP TABLE users; --", "App.Tenant"])
def test_setting_name_must_be_a_plain_custom_setting(name: str) -> None:
    with pytest.raises(ValidationError):
        Settings(tenant_setting_name=name)
