# wms_replenishment/core/capacity.py
"""Cube capacity arithmetic for bins and packaging variants.

A location with no declared capacity is treated as unbounded, and so is a
variant without dimensions: capacity checks only constrain what can be
measured.
"""
from typing import Iterable, Optional, Sequence, Tuple


def variant_cube(variant) -> Optional[int]:
    """Cubic millimetres of one unit of a variant, None when not measured."""
    dims = (variant.width_mm, variant.height_mm, variant.length_mm)
    if any(d is None or d <= 0 for d in dims):
        return None
    return dims[0] * dims[1] * dims[2]


def location_capacity(location) -> Optional[int]:
    if location.capacity_cubic_mm:
        return location.capacity_cubic_mm

    dims = (location.width_mm, location.height_mm, location.depth_mm)
    if any(d is None or d <= 0 for d in dims):
        return None
    return dims[0] * dims[1] * dims[2]


def occupied_cube(contents: Iterable[Tuple[int, object]]) -> int:
    """Sum the cube taken by (qty, variant) pairs. Unmeasured variants count as zero."""
    total = 0
    for qty, variant in contents:
        cube = variant_cube(variant)
        if cube and qty > 0:
            total += qty * cube
    return total


def remaining_capacity(location, contents: Iterable[Tuple[int, object]]) -> Optional[int]:
    """Free cube in a location, or None if the location has no capacity limit."""
    capacity = location_capacity(location)
    if capacity is None:
        return None
    return max(capacity - occupied_cube(contents), 0)


def max_units_that_fit(remaining: Optional[int], variant) -> Optional[int]:
    """How many units of a variant fit in the remaining cube. None means no limit."""
    if remaining is None:
        return None
    cube = variant_cube(variant)
    if cube is None:
        return None
    return remaining // cube


def split_for_capacity(
    replen_method: str,
    qty_source_units: int,
    source_upv: int,
    pick_upv: int,
    source_variant,
    pick_variant,
    remaining: Optional[int]
) -> Tuple[int, int]:
    """Split a planned move into the part that fits and the part that overflows.

    case_break stock lands as pick units, so the fit is measured in pick-unit
    cube and rounded down to whole source units. Other methods land whole
    source units and are measured by source cube.

    Returns:
        Tuple of (source units that fit, source units that overflow)
    """
    if remaining is None:
        return qty_source_units, 0

    if replen_method == 'case_break':
        fit_pick = max_units_that_fit(remaining, pick_variant)
        if fit_pick is None:
            return qty_source_units, 0
        fit_source = (fit_pick * pick_upv) // source_upv
    else:
        fit_source = max_units_that_fit(remaining, source_variant)
        if fit_source is None:
            return qty_source_units, 0

    fit_source = min(fit_source, qty_source_units)
    return fit_source, qty_source_units - fit_source


def pick_overflow_bin(candidates: Sequence[Tuple[object, Optional[int]]], unit_cube: Optional[int]):
    """Choose the overflow bin with the most remaining cube that holds at least one unit.

    Args:
        candidates: (location, remaining cube) pairs; None remaining means unbounded
        unit_cube: Cube of one unit of the overflowing variant

    Returns:
        The chosen location, or None
    """
    best = None
    best_remaining = -1
    for location, remaining in candidates:
        if remaining is None:
            return location
        if unit_cube is not None and remaining < unit_cube:
            continue
        if remaining > best_remaining:
            best, best_remaining = location, remaining
    return best
