from __future__ import annotations

import argparse
import asyncio

from creditgate.persistence.db import SessionLocal
from creditgate.services.maintenance import prune_usage_history


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete usage history older than the retention window")
    parser.add_argument("--retention-days", type=int, default=None, help="Override configured retention")
    return parser


async def prune(args: argparse.Namespace) -> None:
    async with SessionLocal() as session:
        deleted = await prune_usage_history(session, retention_days=args.retention_days)
        await session.commit()
        print(f"pruned_usage_history={deleted}")


if __name__ == "__main__":
    asyncio.run(prune(_build_parser().parse_args()))
