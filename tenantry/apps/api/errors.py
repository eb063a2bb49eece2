from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from tenantry.core.errors import (
    CompensationError,
    ContextMissingError,
    InvalidSchemaNameError,
    PlanNotFoundError,
    ProvisioningError,
    RoleViolationError,
    SchemaCollisionError,
    SchemaNotFoundError,
    TenantNotFoundError,
    TenantryError,
    UserNotFoundError,
)


logger = logging.getLogger(__name__)

# Most specific classes first; TenantSettingUnsetError is matched through ContextMissingError.
_ERROR_STATUS: tuple[tuple[type[TenantryError], int, str], ...] = (
    (ContextMissingError, status.HTTP_403_FORBIDDEN, "AUTH_FORBIDDEN"),
    (RoleViolationError, status.HTTP_403_FORBIDDEN, "AUTH_FORBIDDEN"),
    (PlanNotFoundError, status.HTTP_404_NOT_FOUND, "PLAN_NOT_FOUND"),
    (TenantNotFoundError, status.HTTP_404_NOT_FOUND, "TENANT_NOT_FOUND"),
    (UserNotFoundError, status.HTTP_404_NOT_FOUND, "USER_NOT_FOUND"),
    (SchemaNotFoundError, status.HTTP_404_NOT_FOUND, "SCHEMA_NOT_FOUND"),
    (SchemaCollisionError, status.HTTP_409_CONFLICT, "SCHEMA_COLLISION"),
    (InvalidSchemaNameError, status.HTTP_400_BAD_REQUEST, "INVALID_SCHEMA_NAME"),
    (ProvisioningError, status.HTTP_500_INTERNAL_SERVER_ERROR, "PROVISIONING_FAILED"),
    (CompensationError, status.HTTP_500_INTERNAL_SERVER_ERROR, "STATE_INCONSISTENT"),
)


def status_for(exc: TenantryError) -> tuple[int, str]:
    for error_type, status_code, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, code
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR"


def _public_message(exc: TenantryError, status_code: int) -> str:
    # Access denials never reveal which tenant or role was involved.
    if status_code == status.HTTP_403_FORBIDDEN:
        return "Access denied"
    if status_code >= 500:
        return "Request failed"
    return str(exc)


async def tenantry_exception_handler(request: Request, exc: TenantryError) -> JSONResponse:
    status_code, code = status_for(exc)
    if status_code >= 500:
        logger.error("tenantry_error path=%s code=%s", request.url.path, code, exc_info=exc)
    return JSONResponse(
        content={"detail": {"code": code, "message": _public_message(exc, status_code)}},
        status_code=status_code,
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TenantryError, tenantry_exception_handler)
