"""Tenant provisioning with compensating cleanup.

Phase 1 writes the tenant metadata and creates the empty schema in a single
shared-schema transaction. Phase 2 runs the tenant migration set, which commits
per script and therefore cannot be rolled back with Phase 1. When Phase 2
fails, every compensation step is attempted independently so the system ends
with either a fully provisioned tenant or no trace of it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantry.core.config import Settings, get_settings
from tenantry.core.errors import (
    CompensationError,
    PlanNotFoundError,
    ProvisioningError,
    SchemaCollisionError,
    UserNotFoundError,
)
from tenantry.domain.context import (
    ContextCarrier,
    UserRole,
    context_scope,
    maybe_current_context,
    system_context,
)
from tenantry.persistence import catalog
from tenantry.persistence.naming import derive_schema_name, schema_suffix, slugify
from tenantry.persistence.repos import schemas as schemas_repo
from tenantry.persistence.repos import tenants as tenants_repo
from tenantry.persistence.router import QueryRouter
from tenantry.services import audit
from tenantry.services.migrations import MigrationRunner


logger = logging.getLogger(__name__)

FaultHook = Callable[[str], Awaitable[None]]

# SQLSTATEs for duplicate_schema and unique_violation.
_COLLISION_SQLSTATES = ("42P06", "23505")

COMPENSATION_STEPS = ("unlink_owner", "delete_subscription", "delete_tenant", "drop_schema", "audit")


@dataclass(frozen=True)
class ProvisionedTenant:
    tenant_id: str
    schema_name: str
    slug: str
    plan_slug: str
    subscription_id: str
    trial_ends_at: datetime


@dataclass(frozen=True)
class _Phase1Result:
    subscription_id: str
    trial_ends_at: datetime
    previous_link: tenants_repo.OwnerLink | None


def _is_collision(exc: DBAPIError) -> bool:
    # asyncpg exposes sqlstate, psycopg pgcode.
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in _COLLISION_SQLSTATES


class ProvisioningOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession] | None = None,
        migration_runner: MigrationRunner | None = None,
        settings: Settings | None = None,
        fault_hook: FaultHook | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._router = QueryRouter(session_factory, verify_schema=False)
        self._runner = migration_runner or MigrationRunner(session_factory)
        # Awaited with the step name before each compensation step; used to inject faults.
        self._fault_hook = fault_hook

    def _carrier(self, user_id: str, tenant_id: str) -> ContextCarrier:
        # Inherit the caller's request id when there is one, otherwise attribute the work to the acting user.
        parent = maybe_current_context()
        ctx = system_context(UserRole.SYSTEM_PROVISIONING, tenant_id=tenant_id, parent=parent)
        if parent is None:
            ctx = replace(ctx, user_id=user_id)
        return ctx

    async def provision(self, user_id: str, plan_slug: str, org_name: str) -> ProvisionedTenant:
        slug = slugify(org_name, self._settings.tenant_slug_max_length)
        tenant_id = str(uuid4())
        schema_name = derive_schema_name(
            slug, schema_suffix(tenant_id, self._settings.tenant_schema_suffix_length)
        )
        ctx = self._carrier(user_id, tenant_id)

        async with context_scope(ctx):
            logger.info(
                "tenant_provision_start request_id=%s tenant_id=%s schema=%s plan=%s",
                ctx.request_id,
                tenant_id,
                schema_name,
                plan_slug,
            )
            phase1 = await self._create_metadata(
                user_id=user_id,
                tenant_id=tenant_id,
                org_name=org_name,
                slug=slug,
                schema_name=schema_name,
                plan_slug=plan_slug,
            )

            executed: list[str] = []
            try:
                result = await self._runner.apply(schema_name)
                executed = list(result.executed)
                errors = list(result.errors)
            except Exception as exc:  # noqa: BLE001 - any Phase 2 failure triggers compensation
                logger.error(
                    "tenant_migrations_crashed tenant_id=%s schema=%s", tenant_id, schema_name, exc_info=exc
                )
                errors = [str(exc)]

            if errors:
                await self._compensate(
                    user_id=user_id,
                    tenant_id=tenant_id,
                    schema_name=schema_name,
                    previous_link=phase1.previous_link,
                    errors=errors,
                )

            logger.info(
                "tenant_provisioned request_id=%s tenant_id=%s schema=%s migrations=%d",
                ctx.request_id,
                tenant_id,
                schema_name,
                len(executed),
            )
        return ProvisionedTenant(
            tenant_id=tenant_id,
            schema_name=schema_name,
            slug=slug,
            plan_slug=plan_slug,
            subscription_id=phase1.subscription_id,
            trial_ends_at=phase1.trial_ends_at,
        )

    async def _create_metadata(
        self,
        *,
        user_id: str,
        tenant_id: str,
        org_name: str,
        slug: str,
        schema_name: str,
        plan_slug: str,
    ) -> _Phase1Result:
        try:
            async with self._router.session(shared=True) as handle:
                session = handle.session
                plan = await tenants_repo.get_plan_by_slug(session, plan_slug)
                if plan is None:
                    raise PlanNotFoundError(f"Subscription plan {plan_slug} not found")
                if await tenants_repo.get_user(session, user_id) is None:
                    raise UserNotFoundError(f"User {user_id} not found")
                if await tenants_repo.schema_name_taken(session, schema_name) or await catalog.schema_exists(
                    session, schema_name
                ):
                    raise SchemaCollisionError(f"Schema {schema_name} already exists")

                now = datetime.now(timezone.utc)
                trial_days = plan.trial_days or self._settings.default_trial_days
                trial_ends_at = now + timedelta(days=trial_days)
                subscription_id = str(uuid4())

                await tenants_repo.create_tenant(
                    session,
                    tenant_id=tenant_id,
                    name=org_name,
                    slug=slug,
                    schema_name=schema_name,
                    owner_id=user_id,
                )
                await tenants_repo.create_subscription(
                    session,
                    subscription_id=subscription_id,
                    tenant_id=tenant_id,
                    plan_id=plan.id,
                    period_start=now,
                    period_end=trial_ends_at,
                )
                await schemas_repo.create_schema(session, schema_name)
                previous_link = await tenants_repo.link_owner(
                    session, user_id=user_id, tenant_id=tenant_id, role=self._settings.owner_role
                )
                await audit.record_event(
                    session=session,
                    event_type="tenant.provisioned",
                    outcome="success",
                    tenant_id=tenant_id,
                    resource_type="tenant",
                    resource_id=tenant_id,
                    metadata={"schema_name": schema_name, "plan": plan_slug, "slug": slug},
                )
        except DBAPIError as exc:
            # Lost a race with a concurrent provision of the same name.
            if _is_collision(exc):
                raise SchemaCollisionError(f"Schema {schema_name} already exists") from exc
            raise
        return _Phase1Result(
            subscription_id=subscription_id,
            trial_ends_at=trial_ends_at,
            previous_link=previous_link,
        )

    async def _compensate(
        self,
        *,
        user_id: str,
        tenant_id: str,
        schema_name: str,
        previous_link: tenants_repo.OwnerLink | None,
        errors: list[str],
    ) -> None:
        """Undo Phase 1; always raises."""
        failures: dict[str, str] = {}
        logger.warning(
            "tenant_compensation_start tenant_id=%s schema=%s errors=%d", tenant_id, schema_name, len(errors)
        )

        async def _audit(session: AsyncSession) -> Any:
            await audit.record_event(
                session=session,
                event_type="tenant.provision_failed",
                outcome="failure",
                tenant_id=tenant_id,
                resource_type="tenant",
                resource_id=tenant_id,
                metadata={
                    "schema_name": schema_name,
                    "errors": errors,
                    "compensation_failures": sorted(failures),
                },
                error_code="PROVISIONING_FAILED",
                best_effort=False,
            )

        steps: dict[str, Callable[[AsyncSession], Awaitable[Any]]] = {
            "unlink_owner": lambda session: tenants_repo.unlink_owner(
                session, user_id=user_id, tenant_id=tenant_id, previous=previous_link
            ),
            "delete_subscription": lambda session: tenants_repo.delete_subscription(session, tenant_id),
            "delete_tenant": lambda session: tenants_repo.delete_tenant(session, tenant_id),
            "drop_schema": lambda session: schemas_repo.drop_schema(session, schema_name),
            "audit": _audit,
        }

        for step in COMPENSATION_STEPS:
            try:
                if self._fault_hook is not None:
                    await self._fault_hook(step)
                async with self._router.session(shared=True) as handle:
                    await steps[step](handle.session)
            except Exception as exc:  # noqa: BLE001 - later steps still run
                failures[step] = str(exc)
                logger.error(
                    "tenant_compensation_step_failed tenant_id=%s schema=%s step=%s",
                    tenant_id,
                    schema_name,
                    step,
                    exc_info=exc,
                )

        if failures:
            logger.critical(
                "tenant_compensation_failed tenant_id=%s schema=%s failed_steps=%s",
                tenant_id,
                schema_name,
                ",".join(sorted(failures)),
            )
            raise CompensationError(tenant_id, schema_name, failures)

        logger.warning("tenant_provision_rolled_back tenant_id=%s schema=%s", tenant_id, schema_name)
        raise ProvisioningError(schema_name, errors)
