from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from creditgate.core.config import get_settings
from creditgate.domain.models import UsageRecord


logger = logging.getLogger(__name__)


def usage_history_cutoff_ms(now: datetime | None = None, *, retention_days: int | None = None) -> int:
    settings = get_settings()
    days = settings.usage_history_retention_days if retention_days is None else retention_days
    moment = now or datetime.now(timezone.utc)
    return int((moment - timedelta(days=days)).timestamp() * 1000)


async def prune_usage_history(
    session: AsyncSession,
    now: datetime | None = None,
    *,
    retention_days: int | None = None,
) -> int:
    # Lifetime aggregates are left intact; only raw history ages out.
    cutoff_ms = usage_history_cutoff_ms(now, retention_days=retention_days)
    result = await session.execute(delete(UsageRecord).where(UsageRecord.timestamp_ms < cutoff_ms))
    deleted = result.rowcount or 0
    logger.info("usage_history_pruned cutoff_ms=%s rows=%s", cutoff_ms, deleted)
    return deleted
