from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
import math
from types import MappingProxyType
from typing import Any, Mapping


class ModelClass(str, Enum):
    # Typed model tag resolved once at ingestion; unknown models are billed as Sonnet.
    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"
    UNKNOWN = "unknown"

    @property
    def report_name(self) -> str:
        # Unknown models surface as Sonnet in breakdowns, matching how they are billed.
        return ModelClass.SONNET.value if self is ModelClass.UNKNOWN else self.value


# Substring match order matters: the first hit wins.
_MATCH_ORDER = (ModelClass.OPUS, ModelClass.SONNET, ModelClass.HAIKU)


def classify_model(model: str | None) -> ModelClass:
    # Case-insensitive substring dispatch on free-form upstream model ids.
    lowered = (model or "").lower()
    for model_class in _MATCH_ORDER:
        if model_class.value in lowered:
            return model_class
    return ModelClass.UNKNOWN


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_write_tokens + self.cache_read_tokens

    @property
    def context_tokens(self) -> int:
        # Prompt-side tokens decide the Sonnet context tier.
        return self.input_tokens + self.cache_write_tokens + self.cache_read_tokens

    @classmethod
    def from_upstream(cls, usage: Mapping[str, Any] | None) -> "TokenUsage":
        # Parse the upstream `usage` object; absent or null counters count as zero.
        usage = usage or {}
        return cls(
            input_tokens=_as_count(usage.get("input_tokens")),
            output_tokens=_as_count(usage.get("output_tokens")),
            cache_write_tokens=_as_count(usage.get("cache_creation_input_tokens")),
            cache_read_tokens=_as_count(usage.get("cache_read_input_tokens")),
        )


def _as_count(value: Any) -> int:
    if value is None:
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class RateCard:
    # USD per million tokens for each token category.
    input: Decimal
    output: Decimal
    cache_write: Decimal
    cache_read: Decimal


OPUS_RATES = RateCard(
    input=Decimal("15"), output=Decimal("75"), cache_write=Decimal("18.75"), cache_read=Decimal("1.50")
)
SONNET_SMALL_CONTEXT_RATES = RateCard(
    input=Decimal("3"), output=Decimal("15"), cache_write=Decimal("3.75"), cache_read=Decimal("0.30")
)
SONNET_LARGE_CONTEXT_RATES = RateCard(
    input=Decimal("6"), output=Decimal("22.50"), cache_write=Decimal("7.50"), cache_read=Decimal("0.60")
)

# Inclusive on the small-context side.
CONTEXT_THRESHOLD_TOKENS = 200_000

_ONE_MILLION = Decimal("1000000")

DEFAULT_MODEL_WEIGHTS: Mapping[ModelClass, Decimal] = MappingProxyType(
    {
        ModelClass.OPUS: Decimal("5.0"),
        ModelClass.SONNET: Decimal("1.0"),
        ModelClass.HAIKU: Decimal("0.25"),
        ModelClass.UNKNOWN: Decimal("1.0"),
    }
)


@dataclass(frozen=True)
class UsagePrice:
    # Priced usage ready to be appended to the ledger.
    model_class: ModelClass
    credits: int
    cost_usd: Decimal
    total_tokens: int


@dataclass(frozen=True)
class CreditModel:
    weights: Mapping[ModelClass, Decimal] = field(default_factory=lambda: DEFAULT_MODEL_WEIGHTS)
    opus_rates: RateCard = OPUS_RATES
    sonnet_small_rates: RateCard = SONNET_SMALL_CONTEXT_RATES
    sonnet_large_rates: RateCard = SONNET_LARGE_CONTEXT_RATES
    context_threshold_tokens: int = CONTEXT_THRESHOLD_TOKENS

    def weight(self, model_class: ModelClass) -> Decimal:
        return self.weights.get(model_class, self.weights[ModelClass.SONNET])

    def credits(self, model_class: ModelClass, usage: TokenUsage) -> int:
        # Always round up so any nonzero usage costs at least one credit.
        weighted = Decimal(usage.total_tokens) * self.weight(model_class)
        return int(math.ceil(weighted))

    def rate_card(self, model_class: ModelClass, usage: TokenUsage) -> RateCard:
        if model_class is ModelClass.OPUS:
            return self.opus_rates
        if usage.context_tokens <= self.context_threshold_tokens:
            return self.sonnet_small_rates
        return self.sonnet_large_rates

    def cost(self, model_class: ModelClass, usage: TokenUsage) -> Decimal:
        # Informational dollar cost; never used for admission.
        rates = self.rate_card(model_class, usage)
        total = (
            Decimal(usage.input_tokens) * rates.input
            + Decimal(usage.output_tokens) * rates.output
            + Decimal(usage.cache_write_tokens) * rates.cache_write
            + Decimal(usage.cache_read_tokens) * rates.cache_read
        )
        return total / _ONE_MILLION

    def price(self, model: str | ModelClass | None, usage: TokenUsage) -> UsagePrice:
        model_class = model if isinstance(model, ModelClass) else classify_model(model)
        return UsagePrice(
            model_class=model_class,
            credits=self.credits(model_class, usage),
            cost_usd=self.cost(model_class, usage),
            total_tokens=usage.total_tokens,
        )


DEFAULT_CREDIT_MODEL = CreditModel()
