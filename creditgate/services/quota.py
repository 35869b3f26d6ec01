from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
import time
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from creditgate.core.errors import QuotaExceededError
from creditgate.domain.models import Credential
from creditgate.services.credits.plans import PlanLimits
from creditgate.services.usage.window import WindowUsage, format_duration, round_half_up, window_usage


logger = logging.getLogger(__name__)

_FULL_SHARE = 100


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: str | None
    plan: PlanLimits
    quota_percentage: int
    plan_limit: int
    effective_limit: int
    credits_used: int
    remaining: int
    # Rounded for display; admission compares raw credits against the limit.
    percentage_used: int
    percentage_exact: float
    reset_at_ms: int
    time_until_reset_ms: int
    usage: WindowUsage

    @property
    def retry_after_s(self) -> int:
        return max(1, math.ceil(self.time_until_reset_ms / 1000))


def effective_limit(plan_credits: int, quota_percentage: int | None) -> int:
    # Missing share behaves as the full plan limit.
    share = _FULL_SHARE if quota_percentage is None else int(quota_percentage)
    return (plan_credits * share) // 100


def limit_description(plan: PlanLimits, quota_percentage: int) -> str:
    if quota_percentage < _FULL_SHARE:
        return f"{quota_percentage}% of {plan.name.value} plan limit"
    return f"{plan.name.value} plan limit"


class QuotaService:
    # Read-only admission check over the rolling window; reserves nothing.

    def __init__(self, *, time_provider: Callable[[], int] | None = None) -> None:
        self._time_provider = time_provider or _now_ms

    async def decide(
        self,
        session: AsyncSession,
        *,
        credential_id: str,
        plan: PlanLimits,
    ) -> QuotaDecision:
        now_ms = self._time_provider()
        stored_share = (
            await session.execute(select(Credential.quota_percentage).where(Credential.id == credential_id))
        ).scalar_one_or_none()
        share = _FULL_SHARE if stored_share is None else int(stored_share)
        limit = effective_limit(plan.credits_per_window, share)
        usage = await window_usage(session, credential_id, window_hours=plan.window_hours, now_ms=now_ms)

        if limit > 0:
            exact = usage.credits_used / limit * 100
        else:
            # A zero limit admits nothing.
            exact = 100.0
        allowed = usage.credits_used < limit
        percentage = round_half_up(exact)

        reason = None
        if not allowed:
            reason = (
                f"Quota exceeded: {percentage}% of {limit_description(plan, share)} used. "
                f"Resets {format_duration(usage.time_until_reset_ms)} from now."
            )
            logger.info(
                "quota_denied credential_id=%s plan=%s used=%s limit=%s",
                credential_id,
                plan.name.value,
                usage.credits_used,
                limit,
            )
        return QuotaDecision(
            allowed=allowed,
            reason=reason,
            plan=plan,
            quota_percentage=share,
            plan_limit=plan.credits_per_window,
            effective_limit=limit,
            credits_used=usage.credits_used,
            remaining=max(0, limit - usage.credits_used),
            percentage_used=percentage,
            percentage_exact=exact,
            reset_at_ms=usage.next_reset_ms,
            time_until_reset_ms=usage.time_until_reset_ms,
            usage=usage,
        )


_quota_service: QuotaService | None = None


def get_quota_service() -> QuotaService:
    # Reuse a singleton service to avoid re-instantiation per request.
    global _quota_service
    if _quota_service is None:
        _quota_service = QuotaService()
    return _quota_service


def reset_quota_service() -> None:
    # Allow tests to reset cached quota service state.
    global _quota_service
    _quota_service = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(timestamp_ms: int) -> str:
    # ISO-8601 in UTC with millisecond precision and a trailing Z.
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def quota_headers(decision: QuotaDecision) -> dict[str, str]:
    # Render quota headers attached to every proxied response.
    return {
        "X-RateLimit-Limit": str(decision.effective_limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": iso_from_ms(decision.reset_at_ms),
        "X-Quota-Percentage": f"{decision.percentage_exact:.2f}",
    }


def quota_exceeded_detail(decision: QuotaDecision) -> dict[str, Any]:
    return {
        "usage_percentage": decision.percentage_used,
        "reset_at": iso_from_ms(decision.reset_at_ms),
        "time_until_reset": format_duration(decision.time_until_reset_ms),
        "limit": decision.effective_limit,
        "remaining": decision.remaining,
        "retry_after_seconds": decision.retry_after_s,
    }


def build_quota_error(decision: QuotaDecision) -> QuotaExceededError:
    # Construct stable 429 payloads with reset guidance and quota headers.
    headers = quota_headers(decision)
    headers["Retry-After"] = str(decision.retry_after_s)
    return QuotaExceededError(
        decision.reason or "Quota exceeded",
        retry_after_s=decision.retry_after_s,
        headers=headers,
        detail=quota_exceeded_detail(decision),
    )
