from __future__ import annotations

from collections.abc import Iterable

from .locate import relocate
from .models import Range, Suggestion
from .ranges import clamp, ordered
from .segmentation import DEFAULT_SEGMENTER, Segmenter, grapheme_snap


def resolve_range(text: str, s: Suggestion, *, segmenter: Segmenter = DEFAULT_SEGMENTER) -> Range:
    """Where ``s`` applies in the current ``text``: anchored relocation, else the declared range."""
    rng = clamp(ordered(s.range), len(text))
    if s.original:
        found = relocate(text, s.range, s.original, s.replacement, s.before, s.after, segmenter=segmenter)
        if found is not None:
            rng = found
    return grapheme_snap(text, rng)


def apply_suggestion(text: str, s: Suggestion, *, segmenter: Segmenter = DEFAULT_SEGMENTER) -> str:
    rng = resolve_range(text, s, segmenter=segmenter)
    return text[: rng.start] + s.replacement + text[rng.end :]


def revert_suggestion(text: str, s: Suggestion, *, segmenter: Segmenter = DEFAULT_SEGMENTER) -> str:
    """Undo ``apply_suggestion``: find the inserted replacement and put ``original`` back.

    Raises ``ValueError`` when the replacement can no longer be found near the declared start.
    """
    original = s.original or ""
    start = max(0, min(s.start, len(text)))
    if not s.replacement:
        return text[:start] + original + text[start:]
    expected = Range(start, start + len(s.replacement))
    found = relocate(text, expected, s.replacement, original, s.before, s.after, segmenter=segmenter)
    if found is None:
        raise ValueError(f"Cannot revert suggestion {s.id!r}: replacement not found")
    return text[: found.start] + original + text[found.end :]


def mark_applied(suggestions: Iterable[Suggestion], suggestion_id: str) -> Suggestion | None:
    """Flip the soft-delete flag on the matching suggestion; the record itself is kept."""
    for s in suggestions:
        if s.id == suggestion_id:
            s.applied = True
            return s
    return None


def apply_all(text: str, suggestions: list[Suggestion], *, segmenter: Segmenter = DEFAULT_SEGMENTER) -> str:
    """Apply every not-yet-applied suggestion, last first so earlier offsets stay valid."""
    out = text
    for s in sorted(suggestions, key=lambda item: (item.start, item.end), reverse=True):
        if s.applied:
            continue
        out = apply_suggestion(out, s, segmenter=segmenter)
        s.applied = True
    return out
