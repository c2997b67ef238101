"""
Scene order re-indexing.

Order indices are the single source of truth for presentation and
generation order. Every structural mutation (add, remove, reorder) computes
its new layout here and hands the full {scene_id: order} map to the store,
which applies it in one atomic write.
"""

from typing import Iterable

from .errors import ValidationError


def resequence(scene_ids: Iterable[str]) -> dict[str, int]:
    """Map scene ids to a dense, zero-based order in the given sequence."""
    layout: dict[str, int] = {}
    for scene_id in scene_ids:
        if scene_id in layout:
            raise ValidationError(f"Duplicate scene id in layout: {scene_id}")
        layout[scene_id] = len(layout)
    return layout


def clamp_position(position: int, count: int) -> int:
    """Insert positions past the end append; negatives are rejected."""
    if position < 0:
        raise ValidationError(f"Scene order must be >= 0, got {position}")
    return min(position, count)


def layout_with_insert(ordered_ids: list[str], new_id: str, position: int) -> dict[str, int]:
    position = clamp_position(position, len(ordered_ids))
    ids = list(ordered_ids)
    ids.insert(position, new_id)
    return resequence(ids)


def layout_without(ordered_ids: list[str], removed_id: str) -> dict[str, int]:
    return resequence(i for i in ordered_ids if i != removed_id)


def layout_from_permutation(current_ids: Iterable[str], requested_ids: list[str]) -> dict[str, int]:
    """
    Validate that `requested_ids` is exactly a permutation of `current_ids`.

    Partial lists, unknown ids and duplicates are all rejected; nothing is
    silently reordered.
    """
    current = set(current_ids)
    requested = set(requested_ids)
    if len(requested) != len(requested_ids):
        raise ValidationError("Scene ids in reorder request must be unique")
    if requested != current:
        missing = sorted(current - requested)
        unknown = sorted(requested - current)
        raise ValidationError(
            "Reorder must list every scene of the short exactly once",
            details={"missing": missing, "unknown": unknown},
        )
    return resequence(requested_ids)


def is_dense(orders: Iterable[int]) -> bool:
    orders = list(orders)
    return sorted(orders) == list(range(len(orders)))
