from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from creditgate.apps.api.deps import CredentialPrincipal, get_credential_principal, get_db, get_gateway_config
from creditgate.domain.models import UsageAggregate
from creditgate.services.credits import GatewayConfig
from creditgate.services.quota import get_quota_service, iso_from_ms
from creditgate.services.usage.ledger import UsageLedger
from creditgate.services.usage.window import format_duration


router = APIRouter(tags=["quota"])


@router.get("/quota")
async def get_quota(
    principal: CredentialPrincipal = Depends(get_credential_principal),
    db: AsyncSession = Depends(get_db),
    config: GatewayConfig = Depends(get_gateway_config),
) -> dict:
    # Read-only report; nothing here consumes or reserves credits.
    plan = config.plan_for(principal.plan)
    decision = await get_quota_service().decide(db, credential_id=principal.credential_id, plan=plan)
    usage = decision.usage
    lifetime = await UsageLedger(credit_model=config.credit_model).lifetime(db, principal.credential_id)
    return {
        "credential_id": principal.credential_id,
        "plan": plan.name.value,
        "window_hours": plan.window_hours,
        "quota_percentage": decision.quota_percentage,
        "plan_limit": decision.plan_limit,
        "effective_limit": decision.effective_limit,
        "allowed": decision.allowed,
        "usage": {
            "credits_used": usage.credits_used,
            "request_count": usage.request_count,
            "cost_used": round(usage.cost_used, 6),
            "remaining": decision.remaining,
            "percentage_used": decision.percentage_used,
            "window_start": iso_from_ms(usage.window_start_ms),
        },
        "reset": {
            "next_reset_at": iso_from_ms(decision.reset_at_ms),
            "time_until_reset_ms": decision.time_until_reset_ms,
            "time_until_reset_human": format_duration(decision.time_until_reset_ms),
        },
        "breakdown": [
            {
                "model": item.model_class,
                "requests": item.requests,
                "credits_used": item.credits_used,
                "percentage": item.percentage,
            }
            for item in usage.breakdown
        ],
        "lifetime": _lifetime_payload(lifetime),
    }


@router.get("/usage/history")
async def get_usage_history(
    limit: int = Query(default=50, ge=1, le=500),
    principal: CredentialPrincipal = Depends(get_credential_principal),
    db: AsyncSession = Depends(get_db),
    config: GatewayConfig = Depends(get_gateway_config),
) -> dict:
    rows = await UsageLedger(credit_model=config.credit_model).history(db, principal.credential_id, limit=limit)
    return {
        "items": [
            {
                "timestamp": iso_from_ms(row.timestamp_ms),
                "model": row.model,
                "model_class": row.model_class,
                "input_tokens": row.input_tokens,
                "output_tokens": row.output_tokens,
                "cache_write_tokens": row.cache_write_tokens,
                "cache_read_tokens": row.cache_read_tokens,
                "total_tokens": row.total_tokens,
                "credits_used": row.credits_used,
                "cost": row.cost,
            }
            for row in rows
        ]
    }


_LIFETIME_COUNTERS = (
    "input_tokens",
    "output_tokens",
    "cache_write_tokens",
    "cache_read_tokens",
    "total_tokens",
    "credits_used",
    "request_count",
)


def _lifetime_payload(aggregate: UsageAggregate | None) -> dict:
    # Same shape whether or not the credential has an aggregate row yet.
    payload: dict = {name: getattr(aggregate, name, None) or 0 for name in _LIFETIME_COUNTERS}
    payload["total_cost"] = float(aggregate.total_cost or 0) if aggregate is not None else 0.0
    last_request_at_ms = aggregate.last_request_at_ms if aggregate is not None else None
    payload["last_request_at"] = iso_from_ms(last_request_at_ms) if last_request_at_ms else None
    return payload
