"""row security helpers and shared table policies

Revision ID: 0002_row_security
Revises: 0001_shared_schema
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op

from tenantry.core.config import get_settings
from tenantry.persistence.rls import drop_policy_statements, policy_statements, setting_function_statements


revision = "0002_row_security"
down_revision = "0001_shared_schema"
branch_labels = None
depends_on = None

# (table, owning column, ownerless rows reachable from tenant-less carriers)
_SHARED_POLICIES = (
    ("tenants", "id", False),
    ("subscriptions", "tenant_id", False),
    ("users", "tenant_id", True),
    ("audit_events", "tenant_id", True),
)


def upgrade() -> None:
    for statement in setting_function_statements(get_settings().tenant_setting_name):
        op.execute(statement)
    for table, column, allow_unowned in _SHARED_POLICIES:
        for statement in policy_statements(
            table, qualifier='"public"', column=column, allow_unowned=allow_unowned
        ):
            op.execute(statement)


def downgrade() -> None:
    for table, _, _ in reversed(_SHARED_POLICIES):
        for statement in drop_policy_statements(table, qualifier='"public"'):
            op.execute(statement)
    op.execute("DROP FUNCTION IF EXISTS public.is_system_operation()")
    op.execute("DROP FUNCTION IF EXISTS public.get_current_tenant_id()")
