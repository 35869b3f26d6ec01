from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from types import MappingProxyType
from typing import Mapping

from creditgate.services.credits.pricing import ModelClass


logger = logging.getLogger(__name__)


class PlanName(str, Enum):
    FREE = "free"
    PRO = "pro"
    MAX_5X = "max-5x"
    MAX_20X = "max-20x"


@dataclass(frozen=True)
class PlanLimits:
    name: PlanName
    credits_per_window: int
    window_hours: int
    allowed_model_classes: frozenset[ModelClass]
    # Independent per-credential request-rate ceiling.
    requests_per_minute: int

    @property
    def window_ms(self) -> int:
        return self.window_hours * 60 * 60 * 1000

    def allows(self, model_class: ModelClass) -> bool:
        # Unknown models are treated as Sonnet for entitlement as well as pricing.
        if model_class is ModelClass.UNKNOWN:
            model_class = ModelClass.SONNET
        return model_class in self.allowed_model_classes


_ALL_MODELS = frozenset({ModelClass.HAIKU, ModelClass.SONNET, ModelClass.OPUS})

DEFAULT_PLANS: Mapping[PlanName, PlanLimits] = MappingProxyType(
    {
        PlanName.FREE: PlanLimits(
            name=PlanName.FREE,
            credits_per_window=10_000,
            window_hours=24,
            allowed_model_classes=frozenset({ModelClass.HAIKU, ModelClass.SONNET}),
            requests_per_minute=10,
        ),
        PlanName.PRO: PlanLimits(
            name=PlanName.PRO,
            credits_per_window=10_000_000,
            window_hours=5,
            allowed_model_classes=_ALL_MODELS,
            requests_per_minute=50,
        ),
        PlanName.MAX_5X: PlanLimits(
            name=PlanName.MAX_5X,
            credits_per_window=50_000_000,
            window_hours=5,
            allowed_model_classes=_ALL_MODELS,
            requests_per_minute=100,
        ),
        PlanName.MAX_20X: PlanLimits(
            name=PlanName.MAX_20X,
            credits_per_window=200_000_000,
            window_hours=5,
            allowed_model_classes=_ALL_MODELS,
            requests_per_minute=200,
        ),
    }
)


def normalize_plan(value: str) -> PlanName:
    # Enforce the fixed plan vocabulary for writes.
    try:
        return PlanName(value.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported plan: {value}") from exc


def resolve_plan(value: str | None, plans: Mapping[PlanName, PlanLimits] = DEFAULT_PLANS) -> PlanLimits:
    # Fall back to the free tier for unrecognized stored values rather than failing reads.
    try:
        return plans[normalize_plan(value or PlanName.FREE.value)]
    except (ValueError, KeyError):
        logger.warning("plan_unrecognized plan=%s fallback=free", value)
        return plans[PlanName.FREE]
