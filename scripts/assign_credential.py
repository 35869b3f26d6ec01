from __future__ import annotations

import argparse
import asyncio
import sys

from creditgate.persistence.db import SessionLocal
from creditgate.services.auth.credentials import accept_assignment, assign_credential, pending_invitations


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delegate a credential to another account by email")
    commands = parser.add_subparsers(dest="command", required=True)

    invite = commands.add_parser("invite", help="Mark an unassigned credential pending for an email")
    invite.add_argument("--tenant", required=True, help="Owning tenant identifier")
    invite.add_argument("--credential-id", required=True)
    invite.add_argument("--email", required=True)

    accept = commands.add_parser("accept", help="Accept a pending invitation")
    accept.add_argument("--token", required=True, help="Invitation token")
    accept.add_argument("--account-id", required=True)
    accept.add_argument("--email", required=True, help="Email of the accepting account")

    pending = commands.add_parser("pending", help="List invitations waiting on an email")
    pending.add_argument("--email", required=True)
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        if args.command == "invite":
            token = await assign_credential(
                session,
                credential_id=args.credential_id,
                owner_tenant_id=args.tenant,
                email=args.email,
            )
            print(f"invitation_token={token}")
        elif args.command == "accept":
            credential = await accept_assignment(
                session,
                invitation_token=args.token,
                account_id=args.account_id,
                account_email=args.email,
            )
            print(f"accepted credential_id={credential.id} tenant_id={credential.tenant_id}")
        else:
            for credential in await pending_invitations(session, args.email):
                print(f"credential_id={credential.id} tenant_id={credential.tenant_id} key_prefix={credential.key_prefix}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"assign_credential failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
