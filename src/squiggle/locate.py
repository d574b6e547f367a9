"""Relocate a suggestion's range when the text it points at no longer matches.

Model offsets are unreliable and the user may have edited the text since the request was
made, so every candidate that declares the ``original`` text it saw is re-anchored here:

1. exact hit at the declared range -> unchanged;
2. exact occurrences inside the containing sentence (+/- a small margin), filtered by the
   ``before``/``after`` anchors, closest to the declared start wins (case-only edits get a
   bonus for landing on a sentence start);
3. whitespace-normalized match in a wider window around the declared start, still honoring
   the anchors.
"""

from __future__ import annotations

from .models import Range
from .ranges import clamp, ordered
from .segmentation import DEFAULT_SEGMENTER, Segmenter

SENTENCE_MARGIN = 20
NO_SENTENCE_MARGIN = 120
SENTENCE_START_BONUS = 50
SHORT_ORIGINAL_WINDOW = 80
LONG_ORIGINAL_WINDOW = 300

_SENTENCE_END_CHARS = ".!?\n"
_OPENING_CHARS = "\"'“”‘’([{"


def is_case_only(original: str, replacement: str) -> bool:
    return (
        len(original) == len(replacement)
        and original != replacement
        and original.lower() == replacement.lower()
    )


def is_sentence_start(text: str, idx: int) -> bool:
    i = idx - 1
    while i >= 0 and (text[i].isspace() or text[i] in _OPENING_CHARS):
        i -= 1
    if i < 0:
        return True
    return text[i] in _SENTENCE_END_CHARS


def anchors_match(text: str, start: int, end: int, before: str | None, after: str | None) -> bool:
    if before and not text[max(0, start - len(before)) : start].endswith(before):
        return False
    if after and not text[end : end + len(after)].startswith(after):
        return False
    return True


def fallback_window(original: str) -> int:
    return SHORT_ORIGINAL_WINDOW if len(original) <= 2 else LONG_ORIGINAL_WINDOW


def _exact_occurrences(text: str, needle: str, lo: int, hi: int) -> list[int]:
    out: list[int] = []
    pos = text.find(needle, lo, hi)
    while pos != -1:
        out.append(pos)
        pos = text.find(needle, pos + 1, hi)
    return out


def _search_sentence_window(
    text: str,
    expected: Range,
    original: str,
    replacement: str,
    before: str | None,
    after: str | None,
    segmenter: Segmenter,
) -> Range | None:
    n = len(text)
    sent = segmenter.sentence_containing(text, expected)
    if sent is None:
        sent = Range(max(0, expected.start - NO_SENTENCE_MARGIN), min(n, expected.end + NO_SENTENCE_MARGIN))
    lo = max(0, sent.start - SENTENCE_MARGIN)
    hi = min(n, sent.end + SENTENCE_MARGIN)

    size = len(original)
    candidates = [
        pos
        for pos in _exact_occurrences(text, original, lo, hi)
        if anchors_match(text, pos, pos + size, before, after)
    ]
    if not candidates:
        return None

    case_only = is_case_only(original, replacement)

    def _score(pos: int) -> int:
        score = abs(pos - expected.start)
        if case_only and is_sentence_start(text, pos):
            score -= SENTENCE_START_BONUS
        return score

    best = min(candidates, key=_score)
    return Range(best, best + size)


def _normalized_match_end(text: str, pos: int, target: str) -> int | None:
    """End index if ``text[pos:]`` starts with ``target`` modulo whitespace runs."""
    n = len(text)
    i = pos
    j = 0
    while j < len(target):
        if i >= n:
            return None
        if target[j] == " ":
            if not text[i].isspace():
                return None
            while i < n and text[i].isspace():
                i += 1
            j += 1
            continue
        if text[i] != target[j]:
            return None
        i += 1
        j += 1
    return i


def _search_widened(
    text: str,
    expected: Range,
    original: str,
    before: str | None,
    after: str | None,
    window: int,
) -> Range | None:
    target = " ".join(original.split())
    if not target:
        return None
    lo = max(0, expected.start - window)
    hi = min(len(text), expected.start + window)
    best: Range | None = None
    for pos in range(lo, hi):
        if text[pos].isspace():
            continue
        end = _normalized_match_end(text, pos, target)
        if end is None or not anchors_match(text, pos, end, before, after):
            continue
        if best is None or abs(pos - expected.start) < abs(best.start - expected.start):
            best = Range(pos, end)
    return best


def relocate(
    text: str,
    expected: Range,
    original: str,
    replacement: str = "",
    before: str | None = None,
    after: str | None = None,
    *,
    segmenter: Segmenter = DEFAULT_SEGMENTER,
    window: int | None = None,
) -> Range | None:
    """Best current location of ``original`` near ``expected``, or ``None``.

    ``window`` sizes the widened whitespace-normalized fallback; by default it depends on how
    short ``original`` is (short strings are ambiguous, so they get a tighter window).
    """
    if not original:
        return None
    n = len(text)
    if 0 <= expected.start <= expected.end <= n and text[expected.start : expected.end] == original:
        return expected

    target = clamp(ordered(expected), n)
    found = _search_sentence_window(text, target, original, replacement, before, after, segmenter)
    if found is not None:
        return found
    return _search_widened(
        text,
        target,
        original,
        before,
        after,
        fallback_window(original) if window is None else max(0, int(window)),
    )
