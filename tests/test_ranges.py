from __future__ import annotations

from squiggle.models import Range
from squiggle.ranges import (
    clamp,
    clamp_int,
    conflicts,
    containing_index,
    intersection,
    intersects,
    merge,
    ordered,
    within_any,
)


def test_clamp_keeps_start_before_end():
    assert clamp(Range(-5, 3), 10) == Range(0, 3)
    assert clamp(Range(8, 50), 10) == Range(8, 10)
    assert clamp(Range(12, 20), 10) == Range(10, 10)


def test_clamp_int_falls_back_to_lower_bound_on_garbage():
    assert clamp_int("7", 0, 5) == 5
    assert clamp_int(None, 2, 5) == 2
    assert clamp_int(-3, 0, 5) == 0


def test_ordered_swaps_inverted_range():
    assert ordered(Range(9, 4)) == Range(4, 9)
    assert ordered(Range(4, 9)) == Range(4, 9)


def test_intersects_is_half_open():
    assert intersects(Range(0, 5), Range(4, 6))
    assert not intersects(Range(0, 5), Range(5, 6))
    # Empty ranges never intersect anything.
    assert not intersects(Range(3, 3), Range(0, 10))


def test_conflicts_treats_same_offset_insertions_as_overlapping():
    assert conflicts(Range(5, 5), Range(5, 5))
    assert conflicts(Range(5, 5), Range(5, 7))
    assert conflicts(Range(0, 5), Range(4, 6))
    assert not conflicts(Range(5, 5), Range(3, 5))
    assert not conflicts(Range(3, 3), Range(0, 10))


def test_merge_joins_overlapping_and_touching_ranges():
    merged = merge([Range(10, 12), Range(0, 3), Range(3, 5), Range(11, 15)])
    assert merged == [Range(0, 5), Range(10, 15)]


def test_intersection_and_containment_helpers():
    assert intersection(Range(0, 5), Range(3, 8)) == Range(3, 5)
    assert intersection(Range(0, 2), Range(3, 8)) is None
    assert within_any(Range(2, 3), [Range(0, 1), Range(2, 4)])
    assert containing_index(Range(6, 7), [Range(0, 5), Range(5, 9)]) == 1
    assert containing_index(Range(4, 7), [Range(0, 5), Range(5, 9)]) == -1
