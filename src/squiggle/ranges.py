from __future__ import annotations

from collections.abc import Iterable

from .models import Range


def clamp(rng: Range, length: int) -> Range:
    """Clamp ``rng`` into ``[0, length]`` keeping ``start <= end``."""
    start = max(0, min(rng.start, length))
    end = max(start, min(rng.end, length))
    return Range(start, end)


def clamp_int(value: object, lo: int, hi: int) -> int:
    try:
        n = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError, OverflowError):
        return lo
    return max(lo, min(hi, n))


def ordered(rng: Range) -> Range:
    if rng.end < rng.start:
        return Range(rng.end, rng.start)
    return rng


def intersects(a: Range, b: Range) -> bool:
    return a.start < b.end and a.end > b.start


def conflicts(a: Range, b: Range) -> bool:
    """Overlap, or two edits anchored at one offset where either is an insertion."""
    if intersects(a, b):
        return True
    return a.start == b.start and (a.start == a.end or b.start == b.end)


def contains(outer: Range, inner: Range) -> bool:
    return outer.start <= inner.start and inner.end <= outer.end


def intersects_any(rng: Range, others: Iterable[Range]) -> bool:
    return any(intersects(rng, other) for other in others)


def within_any(rng: Range, allowed: Iterable[Range]) -> bool:
    return any(contains(outer, rng) for outer in allowed)


def intersection(a: Range, b: Range) -> Range | None:
    start = max(a.start, b.start)
    end = min(a.end, b.end)
    if end < start:
        return None
    return Range(start, end)


def merge(ranges: Iterable[Range]) -> list[Range]:
    """Sort and merge overlapping or touching ranges."""
    items = sorted((ordered(r) for r in ranges), key=lambda r: (r.start, r.end))
    out: list[Range] = []
    for rng in items:
        if out and rng.start <= out[-1].end:
            last = out[-1]
            out[-1] = Range(last.start, max(last.end, rng.end))
        else:
            out.append(rng)
    return out


def containing_index(rng: Range, ranges: list[Range]) -> int:
    """Index of the first range that fully contains ``rng``, or -1."""
    for idx, outer in enumerate(ranges):
        if contains(outer, rng):
            return idx
    return -1
