"""
Tests for the feature cost table and script-model pricing.
"""

from decimal import Decimal

import pytest

from studio.pipeline.errors import ValidationError
from studio.pipeline.feature_costs import (
    FEATURE_COSTS,
    OperationType,
    UNKNOWN_MODEL_CREDITS,
    compute_cost,
    get_operation_type,
    get_price,
    script_model_credits,
)


@pytest.mark.parametrize("feature,price,op", [
    ("ai_text_chat", "1", OperationType.AI_TEXT_CHAT),
    ("ai_image_generation", "5", OperationType.AI_IMAGE_GENERATION),
    ("scene_regeneration", "0.5", OperationType.SCENE_REGENERATION),
    ("scene_image_generation", "2", OperationType.SCENE_IMAGE_GENERATION),
    ("scene_video_generation", "5", OperationType.SCENE_VIDEO_GENERATION),
])
def test_price_and_operation_type(feature, price, op):
    assert get_price(feature) == Decimal(price)
    assert get_operation_type(feature) == op


def test_every_feature_has_a_distinct_operation_type():
    ops = [cost.operation_type for cost in FEATURE_COSTS.values()]
    assert len(ops) == len(set(ops))


def test_compute_cost_multiplies_quantity():
    assert compute_cost("scene_image_generation", 3) == Decimal("6")
    assert compute_cost("scene_regeneration") == Decimal("0.5")
    assert compute_cost("script_generation", 0) == Decimal("0")


def test_unknown_feature_is_validation_error():
    with pytest.raises(ValidationError):
        compute_cost("teleportation")


def test_negative_quantity_is_rejected():
    with pytest.raises(ValidationError):
        compute_cost("ai_text_chat", -1)


def test_script_model_credits():
    assert script_model_credits("deepseek/deepseek-v3.2") == 0
    assert script_model_credits("openai/gpt-4o-mini") == 2
    assert script_model_credits("anthropic/claude-3.5-sonnet") == 5
    assert script_model_credits("someone/new-model") == UNKNOWN_MODEL_CREDITS == 2
