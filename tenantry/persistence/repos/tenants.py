from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.domain.models import Subscription, SubscriptionPlan, Tenant, User


async def get_plan_by_slug(session: AsyncSession, slug: str) -> SubscriptionPlan | None:
    # Inactive plans are not offered to new tenants.
    result = await session.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.slug == slug, SubscriptionPlan.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def schema_name_taken(session: AsyncSession, schema_name: str) -> bool:
    result = await session.execute(
        select(func.count()).select_from(Tenant).where(Tenant.schema_name == schema_name)
    )
    return int(result.scalar() or 0) > 0


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_subscription(session: AsyncSession, tenant_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def list_tenants(session: AsyncSession, *, status: str | None = None) -> list[dict[str, Any]]:
    # Outer joins so tenants without a subscription still show up.
    query = (
        select(
            Tenant.id,
            Tenant.name,
            Tenant.slug,
            Tenant.schema_name,
            Tenant.status,
            Tenant.owner_id,
            Tenant.created_at,
            Subscription.status.label("subscription_status"),
            Subscription.trial_ends_at,
            SubscriptionPlan.slug.label("plan_slug"),
            SubscriptionPlan.name.label("plan_name"),
        )
        .select_from(Tenant)
        .outerjoin(Subscription, Subscription.tenant_id == Tenant.id)
        .outerjoin(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
        .order_by(Tenant.created_at, Tenant.id)
    )
    if status is not None:
        query = query.where(Tenant.status == status)
    result = await session.execute(query)
    return [dict(row) for row in result.mappings().all()]


async def create_tenant(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    slug: str,
    schema_name: str,
    owner_id: str,
) -> Tenant:
    # New tenants start active; suspension is an explicit administrative step.
    tenant = Tenant(
        id=tenant_id,
        name=name,
        slug=slug,
        schema_name=schema_name,
        status="active",
        owner_id=owner_id,
    )
    session.add(tenant)
    await session.flush()
    return tenant


async def create_subscription(
    session: AsyncSession,
    *,
    subscription_id: str,
    tenant_id: str,
    plan_id: str,
    period_start: datetime,
    period_end: datetime,
) -> Subscription:
    # Every new tenant starts on a trial that ends with the first billing period.
    subscription = Subscription(
        id=subscription_id,
        tenant_id=tenant_id,
        plan_id=plan_id,
        status="trial",
        current_period_start=period_start,
        current_period_end=period_end,
        trial_ends_at=period_end,
        metadata_json={},
    )
    session.add(subscription)
    await session.flush()
    return subscription


@dataclass(frozen=True)
class OwnerLink:
    # The user's affiliation before provisioning touched it; compensation restores it verbatim.
    tenant_id: str | None
    role: str


async def link_owner(session: AsyncSession, *, user_id: str, tenant_id: str, role: str) -> OwnerLink | None:
    """Attach the user to the tenant with ``role``; return the prior link, or None if the user is absent."""
    user = (await session.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        return None
    previous = OwnerLink(tenant_id=user.tenant_id, role=user.role)
    user.tenant_id = tenant_id
    user.role = role
    await session.flush()
    return previous


async def unlink_owner(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    previous: OwnerLink | None = None,
) -> int:
    # Only touch the user if it still points at this tenant; anything else was changed after us.
    values: dict[str, Any] = {"tenant_id": previous.tenant_id if previous else None}
    if previous is not None:
        values["role"] = previous.role
    result = await session.execute(
        update(User).where(User.id == user_id, User.tenant_id == tenant_id).values(**values)
    )
    return int(result.rowcount or 0)


async def delete_subscription(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(delete(Subscription).where(Subscription.tenant_id == tenant_id))
    return int(result.rowcount or 0)


async def delete_tenant(session: AsyncSession, tenant_id: str) -> int:
    # Subscriptions cascade on the foreign key; callers still delete them explicitly first.
    result = await session.execute(delete(Tenant).where(Tenant.id == tenant_id))
    return int(result.rowcount or 0)


async def detach_users(session: AsyncSession, tenant_id: str) -> int:
    # Users outlive their tenant; they fall back to the unaffiliated state.
    result = await session.execute(update(User).where(User.tenant_id == tenant_id).values(tenant_id=None))
    return int(result.rowcount or 0)


async def update_status(session: AsyncSession, tenant_id: str, status: str) -> Tenant | None:
    # Status only; the schema and its data are untouched.
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        return None
    tenant.status = status
    await session.flush()
    return tenant


async def count_tenants(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(select(Tenant.status, func.count()).group_by(Tenant.status))
    return {str(status): int(count) for status, count in result.all()}


async def count_users(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(User))
    return int(result.scalar() or 0)


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()
