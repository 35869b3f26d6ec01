from __future__ import annotations

# Re-export the credit model for centralized imports.

from dataclasses import dataclass, field
from typing import Mapping

from creditgate.services.credits.plans import DEFAULT_PLANS, PlanLimits, PlanName, normalize_plan, resolve_plan
from creditgate.services.credits.pricing import (
    DEFAULT_CREDIT_MODEL,
    CreditModel,
    ModelClass,
    TokenUsage,
    UsagePrice,
    classify_model,
)


@dataclass(frozen=True)
class GatewayConfig:
    # Immutable plan and weight tables built once at startup and passed to services.
    plans: Mapping[PlanName, PlanLimits] = field(default_factory=lambda: DEFAULT_PLANS)
    credit_model: CreditModel = DEFAULT_CREDIT_MODEL

    def plan_for(self, value: str | None) -> PlanLimits:
        return resolve_plan(value, self.plans)


__all__ = [
    "GatewayConfig",
    "DEFAULT_PLANS",
    "PlanLimits",
    "PlanName",
    "normalize_plan",
    "resolve_plan",
    "DEFAULT_CREDIT_MODEL",
    "CreditModel",
    "ModelClass",
    "TokenUsage",
    "UsagePrice",
    "classify_model",
]
