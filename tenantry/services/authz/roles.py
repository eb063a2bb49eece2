from __future__ import annotations

import functools
import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenantry.core.errors import RoleViolationError
from tenantry.domain.context import UserRole, is_system_role, maybe_current_context, role_value


logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

# Tenant-facing permission groups. System roles are deliberately absent from every set.
TENANT_ROLE_SETS: dict[str, frozenset[str]] = {
    "read": frozenset(
        {UserRole.ADMIN.value, UserRole.MANAGER.value, UserRole.ANALYST.value, UserRole.STAFF.value, UserRole.GUEST.value}
    ),
    "write": frozenset({UserRole.ADMIN.value, UserRole.MANAGER.value, UserRole.STAFF.value}),
    "manage": frozenset({UserRole.ADMIN.value, UserRole.MANAGER.value}),
    "admin": frozenset({UserRole.ADMIN.value}),
}


def allow(required_role: UserRole | str | None, context_role: UserRole | str | None) -> bool:
    """Return True when ``context_role`` satisfies ``required_role``.

    Roles are not ranked: ADMIN does not satisfy SYSTEM_MIGRATION and
    SYSTEM_MIGRATION does not satisfy SYSTEM_JOB. Only an exact match passes.
    """
    if required_role is None:
        return True
    return role_value(context_role) == role_value(required_role)


def enforce_role(required_role: UserRole | str | None) -> None:
    # Reads the ambient carrier; raises instead of returning so callers cannot ignore a denial.
    if required_role is None:
        return
    ctx = maybe_current_context()
    actual = ctx.user_role if ctx else None
    if allow(required_role, actual):
        return
    logger.warning(
        "role_violation required_role=%s actual_role=%s request_id=%s",
        role_value(required_role),
        actual or "-",
        ctx.request_id if ctx else "-",
    )
    raise RoleViolationError(role_value(required_role) or "", actual)


def requires_role(required_role: UserRole | str) -> Callable[[F], F]:
    def _decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def _wrapper(*args: Any, **kwargs: Any) -> Any:
            enforce_role(required_role)
            return await fn(*args, **kwargs)

        return _wrapper  # type: ignore[return-value]

    return _decorator


def role_in_set(role: UserRole | str | None, set_name: str) -> bool:
    # Group membership for tenant-facing checks; enforcement itself stays exact-match.
    if set_name not in TENANT_ROLE_SETS:
        raise ValueError(f"Unknown role set: {set_name}")
    value = role_value(role)
    if not value or is_system_role(value):
        return False
    return value in TENANT_ROLE_SETS[set_name]
