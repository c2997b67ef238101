"""
Tests for scene order re-indexing.
"""

import pytest

from studio.pipeline.errors import ValidationError
from studio.pipeline.ordering import (
    clamp_position,
    is_dense,
    layout_from_permutation,
    layout_with_insert,
    layout_without,
    resequence,
)


def test_resequence_is_dense_and_zero_based():
    assert resequence(["a", "b", "c"]) == {"a": 0, "b": 1, "c": 2}


def test_resequence_rejects_duplicates():
    with pytest.raises(ValidationError):
        resequence(["a", "b", "a"])


def test_clamp_position():
    assert clamp_position(0, 3) == 0
    assert clamp_position(3, 3) == 3
    assert clamp_position(10, 3) == 3
    with pytest.raises(ValidationError):
        clamp_position(-1, 3)


def test_insert_shifts_later_scenes():
    layout = layout_with_insert(["a", "b", "c"], "x", 1)
    assert layout == {"a": 0, "x": 1, "b": 2, "c": 3}


def test_insert_past_end_appends():
    assert layout_with_insert(["a", "b"], "x", 99) == {"a": 0, "b": 1, "x": 2}


def test_remove_middle_redensifies():
    assert layout_without(["a", "b", "c"], "b") == {"a": 0, "c": 1}


def test_permutation_reassigns_orders():
    assert layout_from_permutation(["a", "b", "c"], ["c", "a", "b"]) == {"c": 0, "a": 1, "b": 2}


@pytest.mark.parametrize("requested", [
    ["a", "b"],             # partial
    ["a", "b", "c", "d"],   # unknown id
    ["a", "b", "b"],        # duplicate
])
def test_permutation_mismatch_is_rejected(requested):
    with pytest.raises(ValidationError):
        layout_from_permutation(["a", "b", "c"], requested)


def test_permutation_error_names_missing_and_unknown():
    with pytest.raises(ValidationError) as exc:
        layout_from_permutation(["a", "b", "c"], ["a", "b", "z"])
    assert exc.value.details == {"missing": ["c"], "unknown": ["z"]}


def test_is_dense():
    assert is_dense([])
    assert is_dense([2, 0, 1])
    assert not is_dense([0, 2])
    assert not is_dense([0, 0, 1])
