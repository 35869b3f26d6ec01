from __future__ import annotations

import argparse
import asyncio
import sys

from creditgate.core.config import get_settings
from creditgate.persistence.db import SessionLocal
from creditgate.services.auth.credentials import ensure_tenant, issue_credential


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue a gateway credential for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--name", default=None, help="Credential label")
    parser.add_argument("--email", default=None, help="Tenant email when creating the tenant")
    parser.add_argument("--plan", default="free", help="Plan when creating the tenant: free|pro|max-5x|max-20x")
    parser.add_argument("--quota-percentage", type=int, default=100, help="Share of the plan limit (1-100)")
    return parser


async def _create_credential(args: argparse.Namespace) -> int:
    settings = get_settings()
    async with SessionLocal() as session:
        await ensure_tenant(session, args.tenant, email=args.email, plan=args.plan)
        issued = await issue_credential(
            session,
            tenant_id=args.tenant,
            name=args.name,
            quota_percentage=args.quota_percentage,
            iterations=settings.credential_hash_iterations,
        )

    print("Credential issued:")
    print(f"  credential_id: {issued.credential_id}")
    print(f"  key_prefix: {issued.key_prefix}")
    print("  secret: ")
    print(f"    {issued.raw_secret}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_credential(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_credential failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
