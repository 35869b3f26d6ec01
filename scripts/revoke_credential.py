from __future__ import annotations

import argparse
import asyncio
import sys

from creditgate.persistence.db import SessionLocal
from creditgate.services.auth.credentials import delete_credential, revoke_credential


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Revoke or delete a gateway credential")
    parser.add_argument("--tenant", required=True, help="Owning tenant identifier")
    parser.add_argument("--credential-id", required=True, help="Credential id to revoke")
    parser.add_argument("--purge", action="store_true", help="Hard delete the credential and its usage")
    return parser


async def _revoke(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        if args.purge:
            found = await delete_credential(session, credential_id=args.credential_id, tenant_id=args.tenant)
        else:
            found = await revoke_credential(session, credential_id=args.credential_id, tenant_id=args.tenant)
    if not found:
        print("credential not found", file=sys.stderr)
        return 1
    print(f"{'deleted' if args.purge else 'revoked'} credential_id={args.credential_id}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_revoke(args))
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"revoke_credential failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
