from __future__ import annotations

import argparse
import asyncio
import sys

from creditgate.persistence.db import SessionLocal
from creditgate.services.quota import iso_from_ms
from creditgate.services.upstream.oauth import build_authorize_url, generate_pkce
from creditgate.services.upstream.tokens import connect_tenant, disconnect, get_tokens


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Connect, inspect, or disconnect a tenant's upstream account")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--status", action="store_true", help="Show the stored token expiry")
    mode.add_argument("--disconnect", action="store_true", help="Delete the stored upstream tokens")
    return parser


async def _connect(tenant_id: str) -> int:
    pkce = generate_pkce()
    print("Open this URL, approve access, then paste the code shown (code#state):")
    print(f"  {build_authorize_url(pkce)}")
    code = input("code: ").strip()
    if not code:
        print("no code entered", file=sys.stderr)
        return 1
    async with SessionLocal() as session:
        row = await connect_tenant(session, tenant_id, code, pkce.verifier)
    print(f"connected tenant_id={tenant_id} expires_at={iso_from_ms(row.expires_at_ms)}")
    return 0


async def _status(tenant_id: str) -> int:
    async with SessionLocal() as session:
        row = await get_tokens(session, tenant_id)
    if row is None:
        print(f"tenant_id={tenant_id} connected=false")
        return 1
    print(f"tenant_id={tenant_id} connected=true expires_at={iso_from_ms(row.expires_at_ms)}")
    return 0


async def _disconnect(tenant_id: str) -> int:
    async with SessionLocal() as session:
        removed = await disconnect(session, tenant_id)
    print(f"tenant_id={tenant_id} disconnected={str(removed).lower()}")
    return 0 if removed else 1


def main() -> int:
    args = _build_parser().parse_args()
    if args.status:
        runner = _status(args.tenant)
    elif args.disconnect:
        runner = _disconnect(args.tenant)
    else:
        runner = _connect(args.tenant)
    try:
        return asyncio.run(runner)
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"connect_upstream failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
