"""Cost calculation for prompt runs.

1 credit = $0.000001, so $1 buys 1,000,000 credits. Inference costs below are
per-run credit prices by prompt length; they are operator-tunable data, not
vendor price sheets.
"""

import math

from pydantic import BaseModel, ConfigDict

from creditledger.core.exceptions import LedgerValidationError
from creditledger.models.enums import PromptLength

CREDITS_PER_DOLLAR = 1_000_000


def format_dollars(credits: int) -> str:
    return f"{credits / CREDITS_PER_DOLLAR:.6f}"


class ModelInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    provider: str
    display_name: str
    cost: dict[PromptLength, int]


def _model(model_id: str, provider: str, display_name: str, short: int, medium: int, long: int) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        provider=provider,
        display_name=display_name,
        cost={PromptLength.SHORT: short, PromptLength.MEDIUM: medium, PromptLength.LONG: long},
    )


MODEL_REGISTRY: dict[str, ModelInfo] = {
    m.id: m
    for m in [
        _model("gpt-4o", "openai", "GPT-4o", 8_500, 15_000, 23_500),
        _model("gpt-4o-mini", "openai", "GPT-4o mini", 600, 1_100, 1_800),
        _model("gpt-4-turbo", "openai", "GPT-4 Turbo", 20_000, 35_000, 55_000),
        _model("gpt-image-1", "openai", "GPT Image 1", 40_000, 40_000, 40_000),
        _model("dall-e-3", "openai", "DALL-E 3", 40_000, 40_000, 80_000),
        _model("sonar", "sonar", "Sonar", 1_200, 2_000, 3_100),
        _model("sonar-pro-low", "sonar", "Sonar Pro Low", 3_400, 6_000, 9_400),
        _model("stable-diffusion-xl", "stability", "Stable Diffusion XL", 2_000, 2_000, 2_000),
        _model("sd3", "stability", "Stable Diffusion 3", 65_000, 65_000, 65_000),
    ]
}

# (short upper bound, medium upper bound) in characters, inclusive
_LENGTH_THRESHOLDS = {
    "openai": (1000, 4000),
    "sonar": (800, 3000),
}
_DEFAULT_THRESHOLDS = (1000, 4000)


class CostBreakdown(BaseModel):
    model_id: str
    prompt_length: PromptLength
    inference_cost: int
    platform_markup: int
    creator_fee: int
    total_cost: int

    @property
    def dollar_cost(self) -> str:
        return format_dollars(self.total_cost)

    def to_public(self) -> dict:
        out = self.model_dump(mode="json")
        out["dollar_cost"] = self.dollar_cost
        return out


def get_model(model_id: str) -> ModelInfo:
    model = MODEL_REGISTRY.get(model_id)
    if model is None:
        raise LedgerValidationError(f"Unknown model: {model_id}", code="UNKNOWN_MODEL", details={"model_id": model_id})
    return model


def prompt_length_category(char_count: int, provider: str | None = None) -> PromptLength:
    short_max, medium_max = _LENGTH_THRESHOLDS.get(provider or "", _DEFAULT_THRESHOLDS)
    if char_count <= short_max:
        return PromptLength.SHORT
    if char_count <= medium_max:
        return PromptLength.MEDIUM
    return PromptLength.LONG


def resolve_prompt_length(
    model_id: str, prompt_length: PromptLength | str | None = None, prompt_text: str | None = None
) -> PromptLength:
    if prompt_length:
        return PromptLength(prompt_length)
    if prompt_text is not None:
        return prompt_length_category(len(prompt_text), get_model(model_id).provider)
    return PromptLength.MEDIUM


def calculate_platform_markup(inference_cost: int) -> int:
    """Tiered markup: 20% under $0.01, 10% under $0.10, flat 500 credits above."""
    if inference_cost <= 0:
        return 1
    if inference_cost < 10_000:
        return max(math.ceil(inference_cost * 20 / 100), 1)
    if inference_cost < 100_000:
        return max(math.ceil(inference_cost * 10 / 100), 1)
    return 500


def calculate_cost(
    model_id: str, prompt_length: PromptLength | str, creator_fee_percent: int = 0
) -> CostBreakdown:
    """Creator-fee prompts and platform-markup prompts are exclusive revenue paths."""
    if creator_fee_percent < 0 or creator_fee_percent > 100:
        raise LedgerValidationError(
            "creator_fee_percent must be between 0 and 100",
            details={"creator_fee_percent": creator_fee_percent},
        )
    length = PromptLength(prompt_length)
    inference_cost = get_model(model_id).cost[length]
    creator_fee = inference_cost * creator_fee_percent // 100
    platform_markup = 0 if creator_fee_percent > 0 else calculate_platform_markup(inference_cost)
    return CostBreakdown(
        model_id=model_id,
        prompt_length=length,
        inference_cost=inference_cost,
        platform_markup=platform_markup,
        creator_fee=creator_fee,
        total_cost=inference_cost + platform_markup + creator_fee,
    )


def split_creator_fee(fee: int, creator_share_percent: int = 80) -> tuple[int, int]:
    """Return (creator_share, platform_share); rounding favours the creator."""
    platform_share = fee * (100 - creator_share_percent) // 100
    return fee - platform_share, platform_share
