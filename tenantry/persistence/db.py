from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tenantry.core.config import Settings, get_settings


def engine_kwargs(settings: Settings) -> dict[str, Any]:
    # Bounded asyncpg pool; the pool is the only resource shared across operations.
    kwargs: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.db_pool_size)),
        "max_overflow": max(0, int(settings.db_max_overflow)),
        "pool_timeout": settings.db_pool_timeout_s,
        "pool_recycle": settings.db_pool_recycle_s,
    }
    if settings.db_statement_timeout_ms > 0:
        kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return kwargs


def build_engine(settings: Settings | None = None, **overrides: Any) -> AsyncEngine:
    # Overrides let tests and scripts shrink the pool without touching global settings.
    resolved = settings or get_settings()
    kwargs = engine_kwargs(resolved)
    kwargs.update(overrides)
    return create_async_engine(resolved.database_url, **kwargs)


# Module-level engine shared by the process, as the API and scripts expect.
settings = get_settings()
engine = build_engine(settings)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    # Unrouted session; tenant code goes through QueryRouter so the scope is always applied.
    async with SessionLocal() as session:
        yield session


def pool_stats(target: AsyncEngine | None = None) -> dict[str, int | None]:
    # Expose pool counters so leaked checkouts show up in health output.
    pool = (target or engine).sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
