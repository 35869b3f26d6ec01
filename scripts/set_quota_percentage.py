from __future__ import annotations

import argparse
import asyncio
import sys

from creditgate.persistence.db import SessionLocal
from creditgate.services.auth.credentials import set_quota_percentage


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Set the share of the tenant plan a credential may consume")
    parser.add_argument("--tenant", required=True, help="Owning tenant identifier")
    parser.add_argument("--credential-id", required=True)
    parser.add_argument("--percentage", type=int, required=True, help="1-100")
    return parser


async def _set_share(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        credential = await set_quota_percentage(
            session,
            credential_id=args.credential_id,
            tenant_id=args.tenant,
            quota_percentage=args.percentage,
        )
    print(f"credential_id={credential.id} quota_percentage={credential.quota_percentage}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_set_share(args))
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"set_quota_percentage failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
