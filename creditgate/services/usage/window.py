from __future__ import annotations

from dataclasses import dataclass
import math

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from creditgate.domain.models import UsageRecord
from creditgate.services.credits.pricing import ModelClass


_HOUR_MS = 60 * 60 * 1000
_MINUTE_MS = 60 * 1000


@dataclass(frozen=True)
class ModelBreakdown:
    model_class: str
    requests: int
    credits_used: int
    percentage: int


@dataclass(frozen=True)
class WindowUsage:
    credits_used: int
    request_count: int
    cost_used: float
    window_start_ms: int
    window_end_ms: int
    oldest_timestamp_ms: int | None
    next_reset_ms: int
    time_until_reset_ms: int
    breakdown: tuple[ModelBreakdown, ...]


def round_half_up(value: float) -> int:
    # Percentages round .5 upward rather than to even.
    return int(math.floor(value + 0.5))


def next_reset_ms(oldest_timestamp_ms: int | None, *, window_hours: int, now_ms: int) -> int:
    # The window rolls continuously, so capacity frees up when the oldest record ages out.
    if oldest_timestamp_ms is None:
        return now_ms + window_hours * _HOUR_MS
    return oldest_timestamp_ms + window_hours * _HOUR_MS


def format_duration(ms: int) -> str:
    ms = max(0, int(ms))
    hours = ms // _HOUR_MS
    minutes = (ms % _HOUR_MS) // _MINUTE_MS
    return f"{hours}h {minutes}m"


async def window_usage(
    session: AsyncSession,
    credential_id: str,
    *,
    window_hours: int,
    now_ms: int,
) -> WindowUsage:
    # Recomputed from the ledger on every call; there is no stored window counter.
    window_start_ms = now_ms - window_hours * _HOUR_MS
    in_window = (
        UsageRecord.credential_id == credential_id,
        UsageRecord.timestamp_ms >= window_start_ms,
    )
    totals = (
        await session.execute(
            select(
                func.coalesce(func.sum(UsageRecord.credits_used), 0),
                func.count(UsageRecord.id),
                func.coalesce(func.sum(UsageRecord.cost), 0),
                func.min(UsageRecord.timestamp_ms),
            ).where(*in_window)
        )
    ).one()
    credits_used = int(totals[0] or 0)
    request_count = int(totals[1] or 0)
    cost_used = float(totals[2] or 0)
    oldest = int(totals[3]) if totals[3] is not None else None

    grouped = (
        await session.execute(
            select(
                UsageRecord.model_class,
                func.count(UsageRecord.id),
                func.coalesce(func.sum(UsageRecord.credits_used), 0),
            )
            .where(*in_window)
            .group_by(UsageRecord.model_class)
        )
    ).all()
    breakdown = _build_breakdown(grouped, credits_used)

    reset_ms = next_reset_ms(oldest, window_hours=window_hours, now_ms=now_ms)
    return WindowUsage(
        credits_used=credits_used,
        request_count=request_count,
        cost_used=cost_used,
        window_start_ms=window_start_ms,
        window_end_ms=now_ms,
        oldest_timestamp_ms=oldest,
        next_reset_ms=reset_ms,
        time_until_reset_ms=max(0, reset_ms - now_ms),
        breakdown=breakdown,
    )


def _build_breakdown(grouped, total_credits: int) -> tuple[ModelBreakdown, ...]:  # type: ignore[no-untyped-def]
    # Fold stored classes onto their reporting names before computing shares.
    merged: dict[str, list[int]] = {}
    for model_class, requests, credits in grouped:
        try:
            name = ModelClass(model_class).report_name
        except ValueError:
            name = ModelClass.SONNET.value
        bucket = merged.setdefault(name, [0, 0])
        bucket[0] += int(requests or 0)
        bucket[1] += int(credits or 0)
    items = [
        ModelBreakdown(
            model_class=name,
            requests=requests,
            credits_used=credits,
            percentage=round_half_up(credits / total_credits * 100) if total_credits > 0 else 0,
        )
        for name, (requests, credits) in merged.items()
    ]
    items.sort(key=lambda item: (-item.credits_used, item.model_class))
    return tuple(items)
