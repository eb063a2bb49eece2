"""Schema routing for tenant and shared queries.

Each unit of work borrows one pooled connection, opens one transaction, and
scopes both the search path and the row-security tenant setting to that
transaction. The connection is returned to the pool on every exit path.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.elements import TextClause

from tenantry.core.config import get_settings
from tenantry.core.errors import SchemaNotFoundError, TenantSettingUnsetError
from tenantry.domain.context import ContextCarrier, current_context
from tenantry.persistence import catalog
from tenantry.persistence.naming import is_shared_schema, search_path_for, validate_schema_name
from tenantry.persistence.rls import apply_scope, is_tenant_setting_error, tenant_setting_value


logger = logging.getLogger(__name__)

T = TypeVar("T")
Statement = str | TextClause


def _as_clause(sql: Statement) -> TextClause:
    # Plain strings are wrapped so callers can pass SQL with :named binds.
    return sql if isinstance(sql, TextClause) else text(sql)


class RoutedSession:
    """Handle bound to one connection and one transaction with a fixed schema scope."""

    def __init__(self, session: AsyncSession, *, schema_name: str, context: ContextCarrier) -> None:
        self._session = session
        self.schema_name = schema_name
        self.context = context

    @property
    def session(self) -> AsyncSession:
        # Raw session for ORM use; it shares the routed transaction.
        return self._session

    async def execute(self, sql: Statement, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        # Rows come back as plain dicts so nothing holds a reference to the connection.
        result = await self._session.execute(_as_clause(sql), dict(params or {}))
        if not result.returns_rows:
            return []
        return [dict(row) for row in result.mappings().all()]

    async def fetch_one(self, sql: Statement, params: Mapping[str, Any] | None = None) -> dict[str, Any] | None:
        rows = await self.execute(sql, params)
        return rows[0] if rows else None

    async def scalar(self, sql: Statement, params: Mapping[str, Any] | None = None) -> Any:
        result = await self._session.execute(_as_clause(sql), dict(params or {}))
        return result.scalar()


class QueryRouter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession] | None = None,
        *,
        verify_schema: bool | None = None,
    ) -> None:
        # Imported lazily so tests can pass a fake factory without building the real engine.
        if session_factory is None:
            from tenantry.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._verify_schema = (
            get_settings().verify_tenant_schema_exists if verify_schema is None else verify_schema
        )

    def _target_schema(self, ctx: ContextCarrier, shared: bool) -> str:
        # Shared routing ignores the carrier schema; tenant routing validates it before use.
        if shared:
            return get_settings().shared_schema
        return validate_schema_name(ctx.schema_name)

    @asynccontextmanager
    async def session(self, *, shared: bool = False) -> AsyncIterator[RoutedSession]:
        """Yield a routed handle; commit on success, roll back on any exception."""
        ctx = current_context()
        schema_name = self._target_schema(ctx, shared)
        search_path = search_path_for(schema_name)
        setting_value = tenant_setting_value(ctx)

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    if self._verify_schema and not is_shared_schema(schema_name):
                        if not await catalog.schema_exists(session, schema_name):
                            logger.error(
                                "tenant_schema_missing request_id=%s schema=%s", ctx.request_id, schema_name
                            )
                            raise SchemaNotFoundError(f"Schema {schema_name} does not exist")
                    await apply_scope(session, search_path=search_path, setting_value=setting_value)
                    logger.debug(
                        "routed_session_open request_id=%s schema=%s mode=%s",
                        ctx.request_id,
                        schema_name,
                        "shared" if is_shared_schema(schema_name) else "tenant",
                    )
                    yield RoutedSession(session, schema_name=schema_name, context=ctx)
            except DBAPIError as exc:
                if is_tenant_setting_error(exc):
                    logger.error(
                        "tenant_setting_unset request_id=%s schema=%s", ctx.request_id, schema_name
                    )
                    raise TenantSettingUnsetError(
                        f"Database rejected query without tenant context (schema {schema_name})"
                    ) from exc
                logger.error(
                    "routed_query_failed request_id=%s schema=%s", ctx.request_id, schema_name, exc_info=exc
                )
                raise
            finally:
                logger.debug("routed_session_released request_id=%s schema=%s", ctx.request_id, schema_name)

    async def transaction(self, work: Callable[[RoutedSession], Awaitable[T]], *, shared: bool = False) -> T:
        async with self.session(shared=shared) as handle:
            return await work(handle)

    async def execute_shared(
        self, sql: Statement, params: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        async with self.session(shared=True) as handle:
            return await handle.execute(sql, params)

    async def execute_tenant(
        self, sql: Statement, params: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        async with self.session() as handle:
            return await handle.execute(sql, params)

    async def current_search_path(self, *, shared: bool = False) -> str:
        # Diagnostic: reports what a routed transaction would actually resolve against.
        async with self.session(shared=shared) as handle:
            return str(await handle.scalar("SELECT current_setting('search_path')"))
