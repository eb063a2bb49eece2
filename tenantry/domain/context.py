from __future__ import annotations

import contextvars
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar
from uuid import uuid4

from tenantry.core.config import get_settings
from tenantry.core.errors import ContextMissingError


T = TypeVar("T")

SYSTEM_ROLE_PREFIX = "SYSTEM_"
# Tenant setting value for carriers with no tenant; only rows without an owner match it.
PUBLIC_ACCESS = "PUBLIC_ACCESS"


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    ANALYST = "ANALYST"
    STAFF = "STAFF"
    GUEST = "GUEST"
    # System roles are minted internally and never accepted from end-user input.
    SYSTEM_MIGRATION = "SYSTEM_MIGRATION"
    SYSTEM_JOB = "SYSTEM_JOB"
    SYSTEM_READONLY = "SYSTEM_READONLY"
    SYSTEM_PROVISIONING = "SYSTEM_PROVISIONING"

    def __str__(self) -> str:
        return self.value


def role_value(role: UserRole | str | None) -> str | None:
    if role is None:
        return None
    return role.value if isinstance(role, UserRole) else str(role)


def is_system_role(role: UserRole | str | None) -> bool:
    value = role_value(role)
    return bool(value) and value.startswith(SYSTEM_ROLE_PREFIX)


def is_reserved_tenant_id(tenant_id: str | None) -> bool:
    # These values carry meaning in the row-security policies and must never name a real tenant.
    if not tenant_id:
        return False
    value = str(tenant_id).upper()
    return value.startswith(SYSTEM_ROLE_PREFIX) or value == PUBLIC_ACCESS


@dataclass(frozen=True)
class ContextCarrier:
    """Identity of one logical operation.

    A carrier is created once per inbound request or background job step and
    is never mutated; derive a new one with ``dataclasses.replace`` instead.
    """

    tenant_id: str | None
    user_id: str
    user_role: str
    schema_name: str
    request_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_email: str | None = None

    @property
    def is_system(self) -> bool:
        return is_system_role(self.user_role)

    @property
    def is_shared(self) -> bool:
        return self.schema_name == get_settings().shared_schema


_current: contextvars.ContextVar[ContextCarrier | None] = contextvars.ContextVar(
    "tenantry_context", default=None
)


def current_context() -> ContextCarrier:
    ctx = _current.get()
    if ctx is None:
        raise ContextMissingError(
            "Tenant context missing: the operation must run inside run_with_context()"
        )
    return ctx


def maybe_current_context() -> ContextCarrier | None:
    return _current.get()


def has_context() -> bool:
    return _current.get() is not None


def get_tenant_id() -> str | None:
    return current_context().tenant_id


def get_schema_name() -> str:
    return current_context().schema_name


def get_user_id() -> str:
    return current_context().user_id


def get_request_id() -> str:
    return current_context().request_id


@asynccontextmanager
async def context_scope(ctx: ContextCarrier) -> AsyncIterator[ContextCarrier]:
    # Reset on every exit path so the carrier never outlives its operation.
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)


async def run_with_context(
    ctx: ContextCarrier,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    async with context_scope(ctx):
        return await fn(*args, **kwargs)


def build_context(
    *,
    tenant_id: str | None,
    user_id: str,
    role: UserRole | str,
    request_id: str | None = None,
    schema_name: str | None = None,
    user_email: str | None = None,
) -> ContextCarrier:
    """Build a carrier for an authenticated inbound caller.

    Callers with a tenant must supply the tenant's schema name; callers without
    one (signup, login) are routed to the shared schema only.
    """
    resolved_role = role_value(role)
    if not resolved_role:
        raise ValueError("role is required")
    if is_system_role(resolved_role):
        raise ValueError("System roles cannot be assigned to inbound callers")
    if is_reserved_tenant_id(tenant_id):
        raise ValueError("tenant_id uses a reserved value")
    if tenant_id and not schema_name:
        raise ValueError("schema_name is required when tenant_id is set")
    return ContextCarrier(
        tenant_id=tenant_id,
        user_id=user_id,
        user_role=resolved_role,
        schema_name=schema_name or get_settings().shared_schema,
        request_id=request_id or str(uuid4()),
        user_email=user_email,
    )


def system_context(
    role: UserRole | str,
    *,
    tenant_id: str | None = None,
    schema_name: str | None = None,
    parent: ContextCarrier | None = None,
) -> ContextCarrier:
    """Build a carrier for an internal privileged operation.

    The request id and acting user are inherited from ``parent`` so audit rows
    and logs stay correlated with the operation that triggered the job.
    """
    resolved_role = role_value(role)
    if not is_system_role(resolved_role):
        raise ValueError(f"{resolved_role} is not a system role")
    base = ContextCarrier(
        tenant_id=tenant_id,
        user_id="system",
        user_role=resolved_role,
        schema_name=schema_name or get_settings().shared_schema,
        request_id=str(uuid4()),
    )
    if parent is None:
        return base
    return replace(base, user_id=parent.user_id, request_id=parent.request_id, user_email=parent.user_email)
