from __future__ import annotations

from decimal import Decimal

import pytest

from creditgate.services.credits import DEFAULT_CREDIT_MODEL, ModelClass, TokenUsage, classify_model


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("claude-opus-4-20250514", ModelClass.OPUS),
        ("Claude-3-OPUS", ModelClass.OPUS),
        ("claude-sonnet-4-20250514", ModelClass.SONNET),
        ("claude-3-5-haiku-latest", ModelClass.HAIKU),
        ("gpt-something", ModelClass.UNKNOWN),
        ("", ModelClass.UNKNOWN),
        (None, ModelClass.UNKNOWN),
    ],
)
def test_classify_model(model: str | None, expected: ModelClass) -> None:
    assert classify_model(model) is expected


def test_weighted_credits_match_reference_examples() -> None:
    usage = TokenUsage(input_tokens=1000, output_tokens=500)
    assert DEFAULT_CREDIT_MODEL.price("claude-opus-4", usage).credits == 7500
    assert DEFAULT_CREDIT_MODEL.price("claude-haiku-4", usage).credits == 375
    assert DEFAULT_CREDIT_MODEL.price("claude-sonnet-4", usage).credits == 1500


def test_credits_round_up_to_at_least_one() -> None:
    tiny = TokenUsage(input_tokens=3)
    assert DEFAULT_CREDIT_MODEL.price("claude-haiku-4", tiny).credits == 1
    assert DEFAULT_CREDIT_MODEL.price("claude-haiku-4", TokenUsage(input_tokens=1)).credits == 1
    assert DEFAULT_CREDIT_MODEL.price("claude-haiku-4", TokenUsage()).credits == 0


def test_unknown_model_is_priced_as_sonnet() -> None:
    usage = TokenUsage(input_tokens=1000, output_tokens=1000)
    unknown = DEFAULT_CREDIT_MODEL.price("mystery-model", usage)
    sonnet = DEFAULT_CREDIT_MODEL.price("claude-sonnet-4", usage)
    assert unknown.model_class is ModelClass.UNKNOWN
    assert unknown.credits == sonnet.credits
    assert unknown.cost_usd == sonnet.cost_usd


def test_all_four_token_categories_are_weighted() -> None:
    usage = TokenUsage(input_tokens=10, output_tokens=20, cache_write_tokens=30, cache_read_tokens=40)
    assert usage.total_tokens == 100
    assert DEFAULT_CREDIT_MODEL.price("claude-opus-4", usage).credits == 500


def test_opus_cost_uses_opus_rates() -> None:
    usage = TokenUsage(
        input_tokens=1_000_000,
        output_tokens=1_000_000,
        cache_write_tokens=1_000_000,
        cache_read_tokens=1_000_000,
    )
    cost = DEFAULT_CREDIT_MODEL.price("claude-opus-4", usage).cost_usd
    assert cost == Decimal("15") + Decimal("75") + Decimal("18.75") + Decimal("1.50")


def test_sonnet_context_tier_threshold_is_inclusive_on_small_side() -> None:
    at_threshold = TokenUsage(input_tokens=200_000, output_tokens=1_000_000)
    over_threshold = TokenUsage(input_tokens=200_001, output_tokens=1_000_000)

    small = DEFAULT_CREDIT_MODEL.price("claude-sonnet-4", at_threshold).cost_usd
    large = DEFAULT_CREDIT_MODEL.price("claude-sonnet-4", over_threshold).cost_usd

    assert small == Decimal("200000") * Decimal("3") / Decimal("1000000") + Decimal("15")
    assert large == Decimal("200001") * Decimal("6") / Decimal("1000000") + Decimal("22.50")


def test_sonnet_tier_counts_cache_tokens_toward_context() -> None:
    usage = TokenUsage(input_tokens=100_000, cache_write_tokens=60_000, cache_read_tokens=60_000)
    rates = DEFAULT_CREDIT_MODEL.rate_card(ModelClass.SONNET, usage)
    assert rates == DEFAULT_CREDIT_MODEL.sonnet_large_rates


def test_haiku_cost_uses_sonnet_rate_table() -> None:
    usage = TokenUsage(input_tokens=1_000_000)
    assert DEFAULT_CREDIT_MODEL.price("claude-haiku-4", usage).cost_usd == Decimal("3")


def test_token_usage_from_upstream_payload() -> None:
    usage = TokenUsage.from_upstream(
        {
            "input_tokens": 12,
            "output_tokens": 7,
            "cache_creation_input_tokens": None,
            "cache_read_input_tokens": 5,
        }
    )
    assert usage == TokenUsage(input_tokens=12, output_tokens=7, cache_write_tokens=0, cache_read_tokens=5)
    assert TokenUsage.from_upstream(None) == TokenUsage()
