from __future__ import annotations

import argparse
import asyncio
import sys

from tenantry.core.errors import CompensationError
from tenantry.core.logging import configure_logging
from tenantry.persistence.db import engine
from tenantry.services.provisioning import ProvisioningOrchestrator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provision a tenant schema for an existing user")
    parser.add_argument("--user-id", required=True, help="User who will own the tenant")
    parser.add_argument("--org-name", required=True, help="Organization name; the slug derives from it")
    parser.add_argument("--plan", default="free", help="Subscription plan slug")
    return parser


async def _provision(args: argparse.Namespace) -> int:
    try:
        tenant = await ProvisioningOrchestrator().provision(args.user_id, args.plan, args.org_name)
    finally:
        await engine.dispose()
    print("Tenant provisioned:")
    print(f"  tenant_id: {tenant.tenant_id}")
    print(f"  schema: {tenant.schema_name}")
    print(f"  plan: {tenant.plan_slug} (trial ends {tenant.trial_ends_at.isoformat()})")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_provision(args))
    except CompensationError as exc:
        # Metadata and schema may disagree; an operator has to reconcile by hand.
        print(f"provision_tenant left inconsistent state: {exc}", file=sys.stderr)
        for step, message in sorted(exc.failures.items()):
            print(f"  {step}: {message}", file=sys.stderr)
        return 2
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"provision_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
