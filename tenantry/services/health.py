from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tenantry.domain.context import UserRole, context_scope, maybe_current_context, system_context
from tenantry.persistence.repos import tenants as tenants_repo
from tenantry.persistence.router import QueryRouter


logger = logging.getLogger(__name__)


async def check_connection(
    session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession] | None = None,
) -> bool:
    # Connectivity only; a failure is reported as False rather than raised.
    router = QueryRouter(session_factory, verify_schema=False)
    ctx = system_context(UserRole.SYSTEM_READONLY, parent=maybe_current_context())
    try:
        async with context_scope(ctx):
            async with router.session(shared=True) as handle:
                return await handle.scalar("SELECT 1") == 1
    except SQLAlchemyError as exc:
        logger.warning("database_health_check_failed", exc_info=exc)
        return False


async def database_stats(
    session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession] | None = None,
    engine: AsyncEngine | None = None,
) -> dict[str, Any]:
    from tenantry.persistence.db import pool_stats

    # Pool counters are reported even when the database is unreachable.
    stats: dict[str, Any] = {"connected": await check_connection(session_factory), "pool": pool_stats(engine)}
    if not stats["connected"]:
        return stats
    router = QueryRouter(session_factory, verify_schema=False)
    ctx = system_context(UserRole.SYSTEM_READONLY, parent=maybe_current_context())
    async with context_scope(ctx):
        async with router.session(shared=True) as handle:
            by_status = await tenants_repo.count_tenants(handle.session)
            stats["tenants"] = {"total": sum(by_status.values()), **by_status}
            stats["users"] = await tenants_repo.count_users(handle.session)
    return stats
