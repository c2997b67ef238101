"""
Feature cost table and script-model pricing.

Single source of truth for what each billable feature costs per unit and
which audit operation type it is recorded under. Prices are fixed per
deploy; only the *model* behind a feature is admin-configurable.
"""

from decimal import Decimal
from enum import Enum
from typing import NamedTuple, Optional

from .errors import ValidationError


class OperationType(str, Enum):
    AI_TEXT_CHAT = "AI_TEXT_CHAT"
    AI_IMAGE_GENERATION = "AI_IMAGE_GENERATION"
    FAL_IMAGE_GENERATION = "FAL_IMAGE_GENERATION"
    FAL_VIDEO_GENERATION = "FAL_VIDEO_GENERATION"
    SCRIPT_GENERATION = "SCRIPT_GENERATION"
    SCRIPT_REGENERATION = "SCRIPT_REGENERATION"
    SCENE_REGENERATION = "SCENE_REGENERATION"
    SCENE_IMAGE_GENERATION = "SCENE_IMAGE_GENERATION"
    SCENE_VIDEO_GENERATION = "SCENE_VIDEO_GENERATION"


class FeatureCost(NamedTuple):
    price: Decimal
    operation_type: OperationType


FEATURE_COSTS: dict[str, FeatureCost] = {
    "ai_text_chat": FeatureCost(Decimal("1"), OperationType.AI_TEXT_CHAT),
    "ai_image_generation": FeatureCost(Decimal("5"), OperationType.AI_IMAGE_GENERATION),
    "fal_image_generation": FeatureCost(Decimal("1"), OperationType.FAL_IMAGE_GENERATION),
    "fal_video_generation": FeatureCost(Decimal("1"), OperationType.FAL_VIDEO_GENERATION),
    # Script features are priced per model credit: quantity = model credits_per_use
    "script_generation": FeatureCost(Decimal("1"), OperationType.SCRIPT_GENERATION),
    "script_regeneration": FeatureCost(Decimal("1"), OperationType.SCRIPT_REGENERATION),
    "scene_regeneration": FeatureCost(Decimal("0.5"), OperationType.SCENE_REGENERATION),
    "scene_image_generation": FeatureCost(Decimal("2"), OperationType.SCENE_IMAGE_GENERATION),
    "scene_video_generation": FeatureCost(Decimal("5"), OperationType.SCENE_VIDEO_GENERATION),
}


def get_feature_cost(feature: str) -> FeatureCost:
    try:
        return FEATURE_COSTS[feature]
    except KeyError:
        raise ValidationError(f"Unknown feature key: {feature}") from None


def get_price(feature: str) -> Decimal:
    return get_feature_cost(feature).price


def get_operation_type(feature: str) -> OperationType:
    return get_feature_cost(feature).operation_type


def compute_cost(feature: str, quantity: int | Decimal = 1) -> Decimal:
    """
    Total credit cost for `quantity` units of `feature`.

    Examples:
        >>> compute_cost("scene_image_generation", 3)
        Decimal('6')
        >>> compute_cost("scene_regeneration")
        Decimal('0.5')
    """
    quantity = Decimal(str(quantity))
    if quantity < 0:
        raise ValidationError(f"Quantity cannot be negative: {quantity}")
    return get_price(feature) * quantity


# ── Script models ────────────────────────────────────────────────────────────

class ScriptModel(NamedTuple):
    id: str
    name: str
    tier: str  # free, standard, premium
    is_free: bool
    credits_per_use: int


SCRIPT_MODELS: dict[str, ScriptModel] = {
    m.id: m for m in (
        ScriptModel("deepseek/deepseek-v3.2", "DeepSeek V3.2", "free", True, 0),
        ScriptModel("openai/gpt-4o-mini", "GPT-4o Mini", "standard", False, 2),
        ScriptModel("google/gemini-flash-1.5", "Gemini Flash 1.5", "standard", False, 1),
        ScriptModel("meta-llama/llama-3.1-70b-instruct", "Llama 3.1 70B", "standard", False, 2),
        ScriptModel("anthropic/claude-3.5-sonnet", "Claude 3.5 Sonnet", "premium", False, 5),
        ScriptModel("openai/gpt-4o", "GPT-4o", "premium", False, 5),
    )
}

UNKNOWN_MODEL_CREDITS = 2


def get_script_model(model_id: str) -> Optional[ScriptModel]:
    return SCRIPT_MODELS.get(model_id)


def script_model_credits(model_id: str) -> int:
    """Credits charged for one script run on `model_id` (0 for free-tier models)."""
    model = get_script_model(model_id)
    if model is None:
        return UNKNOWN_MODEL_CREDITS
    return 0 if model.is_free else model.credits_per_use
