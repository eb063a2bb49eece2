from __future__ import annotations

from typing import Sequence


class TenantryError(Exception):
    """Base error for Tenantry."""


class ContextMissingError(TenantryError):
    """No context carrier is bound to the current operation."""


class TenantSettingUnsetError(ContextMissingError):
    """The database refused a policy-protected query because the tenant setting was unset."""


class RoleViolationError(TenantryError):
    """The context role does not satisfy the operation's required role."""

    def __init__(self, required_role: str, actual_role: str | None) -> None:
        self.required_role = required_role
        self.actual_role = actual_role
        super().__init__(f"Insufficient privileges: required role {required_role}, got {actual_role or 'none'}")


class InvalidSchemaNameError(TenantryError):
    """Schema identifier failed validation and must not be interpolated into SQL."""


class SchemaNotFoundError(TenantryError):
    """Tenant schema is absent from the live catalog."""


class SchemaCollisionError(TenantryError):
    """Derived schema name already exists."""


class PlanNotFoundError(TenantryError):
    """Subscription plan slug is not in the catalog."""


class TenantNotFoundError(TenantryError):
    """Tenant row is missing."""


class MigrationScriptError(TenantryError):
    """A tenant migration script failed; remaining scripts for that schema were not run."""

    def __init__(self, schema_name: str, migration_name: str, message: str) -> None:
        self.schema_name = schema_name
        self.migration_name = migration_name
        super().__init__(f"{migration_name}: {message}")


class ProvisioningError(TenantryError):
    """Provisioning failed after Phase 1 and compensation restored a consistent state."""

    def __init__(self, schema_name: str, errors: Sequence[str]) -> None:
        self.schema_name = schema_name
        self.errors = list(errors)
        super().__init__(f"Tenant environment for {schema_name} could not be set up: {'; '.join(self.errors)}")


class CompensationError(TenantryError):
    """Compensating cleanup failed; metadata and physical schema may disagree."""

    def __init__(self, tenant_id: str, schema_name: str, failures: dict[str, str]) -> None:
        self.tenant_id = tenant_id
        self.schema_name = schema_name
        self.failures = dict(failures)
        steps = ", ".join(sorted(self.failures))
        super().__init__(
            f"Compensation failed for tenant {tenant_id} schema {schema_name}; failed steps: {steps}"
        )


class UserNotFoundError(TenantryError):
    """Acting user row is missing."""
