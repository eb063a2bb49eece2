"""FastAPI adapters for the excluded HTTP layer.

The carrier is normally built by the authentication layer; ``get_context``
reads the identity headers that layer forwards. Route handlers receive the
carrier from ``require_role`` and run their work with ``run_with_context``.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from tenantry.core.errors import ContextMissingError, RoleViolationError
from tenantry.domain.context import ContextCarrier, UserRole, build_context, context_scope
from tenantry.services.authz.roles import enforce_role


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def get_context(request: Request) -> ContextCarrier:
    user_id = request.headers.get("X-User-Id")
    role = request.headers.get("X-User-Role")
    if not user_id or not role:
        raise _forbidden_error("Access denied")
    try:
        return build_context(
            tenant_id=request.headers.get("X-Tenant-Id") or None,
            user_id=user_id,
            role=role,
            request_id=request.headers.get("X-Request-Id") or None,
            schema_name=request.headers.get("X-Tenant-Schema") or None,
            user_email=request.headers.get("X-User-Email") or None,
        )
    except ValueError as exc:
        # Includes attempts to claim a system role from outside.
        raise _forbidden_error("Access denied") from exc


def require_role(required_role: UserRole | str):
    # Dependency factory: strict role match, 403 on mismatch.
    async def _dependency(ctx: ContextCarrier = Depends(get_context)) -> ContextCarrier:
        async with context_scope(ctx):
            try:
                enforce_role(required_role)
            except (RoleViolationError, ContextMissingError) as exc:
                raise _forbidden_error("Access denied") from exc
        return ctx

    return _dependency
