from __future__ import annotations

import pytest
from sqlalchemy.exc import DBAPIError

from tenantry.core.errors import (
    ContextMissingError,
    InvalidSchemaNameError,
    SchemaNotFoundError,
    TenantSettingUnsetError,
)
from tenantry.domain.context import ContextCarrier, UserRole, build_context, context_scope, system_context
from tenantry.persistence.router import QueryRouter
from tenantry.tests.utils.fakes import FakeResult, FakeSessionFactory, db_error


SCHEMA = "tenant_acme_co_1a2b3c4d"


def _tenant_ctx(schema_name: str = SCHEMA) -> ContextCarrier:
    return build_context(
        tenant_id="t-acme",
        user_id="u-1",
        role=UserRole.MANAGER,
        request_id="req-1",
        schema_name=schema_name,
    )


def _set_config_calls(statements: list[tuple[str, dict]]) -> list[tuple[str, dict]]:
    return [(sql, params) for sql, params in statements if "set_config" in sql]


@pytest.mark.asyncio
async def test_execute_tenant_scopes_transaction_locally() -> None:
    factory = FakeSessionFactory(
        existing_schemas={SCHEMA},
        responder=lambda sql, params: FakeResult(rows=[{"id": 1}]) if "FROM contacts" in sql else None,
    )
    router = QueryRouter(factory)

    async with context_scope(_tenant_ctx()):
        rows = await router.execute_tenant("SELECT id FROM contacts")

    assert rows == [{"id": 1}]
    calls = _set_config_calls(factory.statements)
    assert calls[0] == (
        "SELECT set_config('search_path', :search_path, true)",
        {"search_path": f'"{SCHEMA}", public'},
    )
    assert calls[1] == (
        "SELECT set_config(:setting, :value, true)",
        {"setting": "app.tenant_id", "value": "t-acme"},
    )
    # Scope is applied before the caller's statement.
    sql = [statement for statement, _ in factory.statements]
    assert sql.index("SELECT id FROM contacts") > sql.index("SELECT set_config(:setting, :value, true)")


@pytest.mark.asyncio
async def test_router_never_issues_session_wide_set() -> None:
    factory = FakeSessionFactory(existing_schemas={SCHEMA})
    router = QueryRouter(factory)
    async with context_scope(_tenant_ctx()):
        await router.execute_tenant("SELECT 1")
        await router.execute_shared("SELECT 1")
    for sql, _ in factory.statements:
        assert not sql.upper().startswith("SET ")


@pytest.mark.asyncio
async def test_execute_shared_uses_shared_search_path_only() -> None:
    factory = FakeSessionFactory()
    router = QueryRouter(factory)
    async with context_scope(_tenant_ctx()):
        await router.execute_shared("SELECT * FROM subscription_plans")
    search_path_call = _set_config_calls(factory.statements)[0]
    assert search_path_call[1] == {"search_path": "public"}
    # No catalog lookup for the shared schema.
    assert not any("information_schema" in sql for sql, _ in factory.statements)


@pytest.mark.asyncio
async def test_missing_context_fails_before_borrowing_a_connection() -> None:
    factory = FakeSessionFactory(existing_schemas={SCHEMA})
    router = QueryRouter(factory)
    with pytest.raises(ContextMissingError):
        await router.execute_tenant("SELECT 1")
    with pytest.raises(ContextMissingError):
        await router.execute_shared("SELECT 1")
    assert factory.sessions == []


@pytest.mark.asyncio
async def test_unknown_schema_is_rejected() -> None:
    factory = FakeSessionFactory(existing_schemas=set())
    router = QueryRouter(factory)
    async with context_scope(_tenant_ctx()):
        with pytest.raises(SchemaNotFoundError):
            await router.execute_tenant("SELECT 1")
    assert factory.open_sessions == 0
    assert factory.sessions[0].events == ["begin", "rollback"]


@pytest.mark.asyncio
async def test_invalid_schema_name_never_reaches_the_database() -> None:
    factory = FakeSessionFactory()
    router = QueryRouter(factory, verify_schema=False)
    ctx = _tenant_ctx()
    bad = ContextCarrier(
        tenant_id=ctx.tenant_id,
        user_id=ctx.user_id,
        user_role=ctx.user_role,
        schema_name='tenant_x"; DROP SCHEMA public CASCADE; --',
        request_id=ctx.request_id,
    )
    async with context_scope(bad):
        with pytest.raises(InvalidSchemaNameError):
            await router.execute_tenant("SELECT 1")
    assert factory.statements == []


@pytest.mark.asyncio
async def test_failure_rolls_back_and_releases_connection() -> None:
    factory = FakeSessionFactory(existing_schemas={SCHEMA})
    router = QueryRouter(factory)

    async def _work(handle) -> None:
        await handle.execute("INSERT INTO contacts (name, type) VALUES ('a', 'customer')")
        raise RuntimeError("boom")

    async with context_scope(_tenant_ctx()):
        with pytest.raises(RuntimeError):
            await router.transaction(_work)

    session = factory.sessions[0]
    assert session.events == ["begin", "rollback"]
    assert session.closed
    assert factory.open_sessions == 0


@pytest.mark.asyncio
async def test_transaction_commits_all_work_on_one_connection() -> None:
    factory = FakeSessionFactory(existing_schemas={SCHEMA})
    router = QueryRouter(factory)

    async def _work(handle) -> str:
        await handle.execute("INSERT INTO contacts (name, type) VALUES ('a', 'customer')")
        await handle.execute("INSERT INTO contacts (name, type) VALUES ('b', 'vendor')")
        return handle.schema_name

    async with context_scope(_tenant_ctx()):
        assert await router.transaction(_work) == SCHEMA

    assert len(factory.sessions) == 1
    assert factory.sessions[0].events == ["begin", "commit"]
    assert len(_set_config_calls(factory.statements)) == 2


@pytest.mark.asyncio
async def test_unset_tenant_setting_surfaces_typed_error() -> None:
    def _responder(sql: str, params: dict):
        if "FROM contacts" in sql:
            raise db_error("tenant context required: app.tenant_id not set", "42501", sql)
        return None

    factory = FakeSessionFactory(existing_schemas={SCHEMA}, responder=_responder)
    router = QueryRouter(factory)
    async with context_scope(_tenant_ctx()):
        with pytest.raises(TenantSettingUnsetError):
            await router.execute_tenant("SELECT * FROM contacts")
    assert factory.open_sessions == 0


@pytest.mark.asyncio
async def test_other_database_errors_propagate_unchanged() -> None:
    def _responder(sql: str, params: dict):
        if "FROM missing" in sql:
            raise db_error('relation "missing" does not exist', "42P01", sql)
        return None

    factory = FakeSessionFactory(existing_schemas={SCHEMA}, responder=_responder)
    router = QueryRouter(factory)
    async with context_scope(_tenant_ctx()):
        with pytest.raises(DBAPIError) as exc_info:
            await router.execute_tenant("SELECT * FROM missing")
    assert not isinstance(exc_info.value, TenantSettingUnsetError)
    assert "does not exist" in str(exc_info.value)


@pytest.mark.asyncio
async def test_system_carrier_sets_role_marker() -> None:
    factory = FakeSessionFactory(existing_schemas={SCHEMA})
    router = QueryRouter(factory)
    async with context_scope(system_context(UserRole.SYSTEM_JOB, schema_name=SCHEMA)):
        await router.execute_tenant("SELECT 1")
    assert _set_config_calls(factory.statements)[1][1]["value"] == "SYSTEM_JOB"
