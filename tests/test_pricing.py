import pytest

from creditledger.core.exceptions import LedgerValidationError
from creditledger.models.enums import PromptLength
from creditledger.services.pricing import (
    calculate_cost,
    calculate_platform_markup,
    prompt_length_category,
    resolve_prompt_length,
    split_creator_fee,
)


@pytest.mark.parametrize(
    "inference,markup",
    [(0, 1), (1, 1), (5_000, 1_000), (9_999, 2_000), (10_000, 1_000), (15_000, 1_500), (99_999, 10_000), (100_000, 500)],
)
def test_platform_markup_tiers(inference, markup):
    assert calculate_platform_markup(inference) == markup


def test_cost_without_creator_fee_adds_markup():
    cost = calculate_cost("gpt-4o", PromptLength.MEDIUM)
    assert (cost.inference_cost, cost.platform_markup, cost.creator_fee, cost.total_cost) == (15_000, 1_500, 0, 16_500)


def test_creator_fee_replaces_markup():
    cost = calculate_cost("gpt-4o", "medium", creator_fee_percent=20)
    assert cost.platform_markup == 0
    assert cost.creator_fee == 3_000
    assert cost.total_cost == 18_000


def test_creator_fee_rounds_down():
    cost = calculate_cost("sonar-pro-low", "short", creator_fee_percent=15)
    assert cost.creator_fee == 510  # floor(3400 * 0.15)


def test_dollar_cost():
    # 8,500 inference + 20% markup (1,700)
    assert calculate_cost("gpt-4o", "short").to_public()["dollar_cost"] == "0.010200"


def test_split_creator_fee():
    assert split_creator_fee(3_000) == (2_400, 600)
    assert split_creator_fee(7) == (6, 1)
    assert split_creator_fee(0) == (0, 0)


def test_unknown_model():
    with pytest.raises(LedgerValidationError) as exc:
        calculate_cost("no-such-model", "short")
    assert exc.value.code == "UNKNOWN_MODEL"


@pytest.mark.parametrize("pct", [-1, 101])
def test_creator_fee_percent_bounds(pct):
    with pytest.raises(LedgerValidationError):
        calculate_cost("gpt-4o", "short", creator_fee_percent=pct)


@pytest.mark.parametrize(
    "chars,provider,expected",
    [
        (1000, "openai", PromptLength.SHORT),
        (1001, "openai", PromptLength.MEDIUM),
        (4001, "openai", PromptLength.LONG),
        (800, "sonar", PromptLength.SHORT),
        (801, "sonar", PromptLength.MEDIUM),
        (3001, "sonar", PromptLength.LONG),
        (2000, None, PromptLength.MEDIUM),
    ],
)
def test_prompt_length_category(chars, provider, expected):
    assert prompt_length_category(chars, provider) == expected


def test_resolve_prompt_length():
    assert resolve_prompt_length("gpt-4o", "long") == PromptLength.LONG
    assert resolve_prompt_length("sonar", prompt_text="x" * 900) == PromptLength.MEDIUM
    assert resolve_prompt_length("gpt-4o") == PromptLength.MEDIUM
