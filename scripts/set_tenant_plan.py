from __future__ import annotations

import argparse
import asyncio
import sys

from creditgate.persistence.db import SessionLocal
from creditgate.services.auth.credentials import set_tenant_plan


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Change a tenant's plan; applies to all owned credentials")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--plan", required=True, help="free|pro|max-5x|max-20x")
    return parser


async def _set_plan(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        tenant = await set_tenant_plan(session, tenant_id=args.tenant, plan=args.plan)
    print(f"tenant_id={tenant.id} plan={tenant.plan}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_set_plan(args))
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"set_tenant_plan failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
