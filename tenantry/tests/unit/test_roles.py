from __future__ import annotations

import logging

import pytest

from tenantry.core.errors import RoleViolationError
from tenantry.domain.context import UserRole, build_context, context_scope, system_context
from tenantry.services.authz.roles import allow, enforce_role, requires_role, role_in_set


def test_allow_requires_exact_match() -> None:
    assert allow(UserRole.SYSTEM_MIGRATION, "SYSTEM_MIGRATION")
    assert allow("ADMIN", UserRole.ADMIN)
    # No hierarchy, in either direction.
    assert not allow(UserRole.SYSTEM_MIGRATION, UserRole.ADMIN)
    assert not allow(UserRole.SYSTEM_JOB, UserRole.SYSTEM_MIGRATION)
    assert not allow(UserRole.STAFF, UserRole.ADMIN)
    assert not allow(UserRole.ADMIN, None)


def test_allow_without_requirement() -> None:
    assert allow(None, None)
    assert allow(None, UserRole.GUEST)


@pytest.mark.asyncio
async def test_enforce_role_denies_and_logs_mismatch(caplog: pytest.LogCaptureFixture) -> None:
    ctx = build_context(tenant_id=None, user_id="u-1", role=UserRole.ADMIN, request_id="req-9")
    caplog.set_level(logging.WARNING, logger="tenantry.services.authz.roles")
    async with context_scope(ctx):
        with pytest.raises(RoleViolationError) as exc_info:
            enforce_role(UserRole.SYSTEM_MIGRATION)
    assert exc_info.value.required_role == "SYSTEM_MIGRATION"
    assert exc_info.value.actual_role == "ADMIN"
    record = next(r for r in caplog.records if "role_violation" in r.getMessage())
    assert "required_role=SYSTEM_MIGRATION" in record.getMessage()
    assert "actual_role=ADMIN" in record.getMessage()


def test_enforce_role_without_context_is_denied() -> None:
    with pytest.raises(RoleViolationError) as exc_info:
        enforce_role(UserRole.ADMIN)
    assert exc_info.value.actual_role is None


def test_enforce_role_without_requirement_passes_without_context() -> None:
    enforce_role(None)


@pytest.mark.asyncio
async def test_requires_role_decorator() -> None:
    calls: list[str] = []

    @requires_role(UserRole.SYSTEM_JOB)
    async def _nightly() -> str:
        calls.append("ran")
        return "done"

    async with context_scope(system_context(UserRole.SYSTEM_JOB)):
        assert await _nightly() == "done"
    async with context_scope(system_context(UserRole.SYSTEM_MIGRATION)):
        with pytest.raises(RoleViolationError):
            await _nightly()
    assert calls == ["ran"]


def test_role_sets_exclude_system_roles() -> None:
    assert role_in_set(UserRole.ANALYST, "read")
    assert not role_in_set(UserRole.ANALYST, "write")
    assert role_in_set("MANAGER", "manage")
    assert not role_in_set(UserRole.MANAGER, "admin")
    for set_name in ("read", "write", "manage", "admin"):
        assert not role_in_set(UserRole.SYSTEM_MIGRATION, set_name)
    with pytest.raises(ValueError):
        role_in_set(UserRole.ADMIN, "superuser")
