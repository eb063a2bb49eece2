"""Glue between the context carrier and the database row-security policies.

Every tenant-owned table carries a policy of the form::

    USING (public.is_system_operation() OR tenant_id::text = public.get_current_tenant_id())

``get_current_tenant_id()`` raises when the setting is unset, so a query that
reaches a protected table without a scope fails loudly instead of returning
every row. The setting and the search path are written together, with
``set_config(..., true)``, so both revert when the transaction ends.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.core.config import get_settings
from tenantry.domain.context import PUBLIC_ACCESS, ContextCarrier, is_reserved_tenant_id


logger = logging.getLogger(__name__)

# Message raised by public.get_current_tenant_id(); matched to surface a typed error.
TENANT_SETTING_REQUIRED = "tenant context required"
# SQLSTATE insufficient_privilege, used by the policy helper.
TENANT_SETTING_SQLSTATE = "42501"


def setting_function_statements(setting_name: str) -> list[str]:
    """DDL for the two SQL helpers every policy calls, bound to ``setting_name``.

    ``setting_name`` comes from validated settings (``Settings.tenant_setting_name``),
    never from request input, so it is rendered as a literal.
    """
    # Unset or empty setting is an error, never a silent match-nothing or match-everything.
    current_tenant = f"""
        CREATE OR REPLACE FUNCTION public.get_current_tenant_id() RETURNS TEXT AS $$
        DECLARE
            value TEXT := current_setting('{setting_name}', true);
        BEGIN
            IF value IS NULL OR value = '' THEN
                RAISE EXCEPTION '{TENANT_SETTING_REQUIRED}: {setting_name} not set'
                    USING ERRCODE = '{TENANT_SETTING_SQLSTATE}';
            END IF;
            RETURN value;
        END;
        $$ LANGUAGE plpgsql STABLE
        """
    system_operation = f"""
        CREATE OR REPLACE FUNCTION public.is_system_operation() RETURNS BOOLEAN AS $$
        BEGIN
            RETURN COALESCE(current_setting('{setting_name}', true), '') LIKE 'SYSTEM\\_%';
        END;
        $$ LANGUAGE plpgsql STABLE
        """
    return [current_tenant, system_operation]


def tenant_setting_value(ctx: ContextCarrier) -> str:
    """Map a carrier to the value the policies compare ``tenant_id`` against."""
    if ctx.is_system:
        # Each system role keeps its own marker so it can be told apart in pg_stat_activity and logs.
        return ctx.user_role
    if ctx.tenant_id:
        # A tenant id that looks like a system marker would switch on the policy bypass.
        if is_reserved_tenant_id(ctx.tenant_id):
            logger.error("reserved_tenant_id_refused request_id=%s role=%s", ctx.request_id, ctx.user_role)
            raise ValueError("tenant_id uses a reserved value")
        return str(ctx.tenant_id)
    return PUBLIC_ACCESS


async def apply_scope(session: AsyncSession, *, search_path: str, setting_value: str) -> None:
    # is_local=true: both values are discarded at COMMIT/ROLLBACK, so a pooled
    # connection never carries them into the next borrower's transaction.
    await session.execute(
        text("SELECT set_config('search_path', :search_path, true)"),
        {"search_path": search_path},
    )
    await session.execute(
        text("SELECT set_config(:setting, :value, true)"),
        {"setting": get_settings().tenant_setting_name, "value": setting_value},
    )


async def current_search_path(session: AsyncSession) -> str:
    result = await session.execute(text("SELECT current_setting('search_path')"))
    return str(result.scalar())


async def current_tenant_setting(session: AsyncSession) -> str | None:
    result = await session.execute(
        text("SELECT current_setting(:setting, true)"),
        {"setting": get_settings().tenant_setting_name},
    )
    value = result.scalar()
    return value or None


def is_tenant_setting_error(exc: BaseException) -> bool:
    # Match both SQLSTATE and message: 42501 alone is also raised for ordinary permission errors.
    if not isinstance(exc, DBAPIError):
        return False
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    message = str(orig if orig is not None else exc)
    return TENANT_SETTING_REQUIRED in message and sqlstate in (None, TENANT_SETTING_SQLSTATE)


def policy_name(table: str) -> str:
    # One policy per table; re-running the installer replaces it.
    return f"tenant_isolation_{table}"


def policy_predicate(column: str = "tenant_id", *, allow_unowned: bool = False) -> str:
    predicate = f"public.is_system_operation() OR {column}::text = public.get_current_tenant_id()"
    if allow_unowned:
        # Rows without an owner (signup, pre-tenant audit) are reachable only from tenant-less carriers.
        predicate = f"({column} IS NULL AND public.get_current_tenant_id() = '{PUBLIC_ACCESS}') OR {predicate}"
    return predicate


def policy_statements(
    table: str,
    *,
    qualifier: str | None = None,
    column: str = "tenant_id",
    allow_unowned: bool = False,
) -> list[str]:
    """DDL installing the isolation policy on one table.

    ``qualifier`` is an already-quoted schema identifier; omit it to resolve the
    table through the transaction's search path.
    """
    target = f'{qualifier}."{table}"' if qualifier else f'"{table}"'
    predicate = policy_predicate(column, allow_unowned=allow_unowned)
    name = policy_name(table)
    return [
        f"ALTER TABLE {target} ENABLE ROW LEVEL SECURITY",
        # The application role owns the tables, so the policy must also bind the owner.
        f"ALTER TABLE {target} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {name} ON {target}",
        f"CREATE POLICY {name} ON {target} AS PERMISSIVE FOR ALL "
        f"USING ({predicate}) WITH CHECK ({predicate})",
    ]


def drop_policy_statements(table: str, *, qualifier: str | None = None) -> list[str]:
    target = f'{qualifier}."{table}"' if qualifier else f'"{table}"'
    return [
        f"DROP POLICY IF EXISTS {policy_name(table)} ON {target}",
        f"ALTER TABLE {target} NO FORCE ROW LEVEL SECURITY",
        f"ALTER TABLE {target} DISABLE ROW LEVEL SECURITY",
    ]


async def _set_tenant_setting(session: AsyncSession, value: str) -> None:
    await session.execute(
        text("SELECT set_config(:setting, :value, true)"),
        {"setting": get_settings().tenant_setting_name, "value": value},
    )


class _DiscardSavepoint(Exception):
    """Raised inside a savepoint so its setting change is rolled back with it."""


async def _scalar_with_setting(session: AsyncSession, value: str, sql: str) -> Any:
    # set_config(..., true) inside a savepoint reverts on ROLLBACK TO SAVEPOINT but
    # survives RELEASE, so the savepoint is always rolled back.
    result: Any = None
    try:
        async with session.begin_nested():
            await _set_tenant_setting(session, value)
            result = (await session.execute(text(sql))).scalar()
            raise _DiscardSavepoint()
    except _DiscardSavepoint:
        pass
    return result


async def verify_enforcement(session: AsyncSession, qualified_table: str) -> None:
    """Raise ``RuntimeError`` unless row security on ``qualified_table`` refuses unscoped reads.

    Policies are evaluated per row, so the unscoped check only runs when the
    table has rows; an empty table is checked through the catalog flags alone.
    Checks run in savepoints that are rolled back, so neither the expected
    failure nor the temporary setting leaks into the caller's transaction.
    """
    flags = (
        await session.execute(
            text("SELECT relrowsecurity, relforcerowsecurity FROM pg_class WHERE oid = to_regclass(:table)"),
            {"table": qualified_table},
        )
    ).first()
    if flags is None or not (flags[0] and flags[1]):
        logger.error("rls_not_forced table=%s", qualified_table)
        raise RuntimeError(f"Row security is not enabled and forced on {qualified_table}")

    has_rows = await _scalar_with_setting(
        session, "SYSTEM_READONLY", f"SELECT EXISTS(SELECT 1 FROM {qualified_table})"
    )
    if not has_rows:
        logger.info("rls_enforcement_verified table=%s check=skipped_empty", qualified_table)
        return

    try:
        await _scalar_with_setting(session, "", f"SELECT 1 FROM {qualified_table} LIMIT 1")
    except DBAPIError as exc:
        if is_tenant_setting_error(exc):
            logger.info("rls_enforcement_verified table=%s check=refused", qualified_table)
            return
        raise
    logger.error("rls_enforcement_failed table=%s", qualified_table)
    raise RuntimeError(f"Row security is not enforcing tenant isolation on {qualified_table}")
