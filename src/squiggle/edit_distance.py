from __future__ import annotations

import re
from dataclasses import dataclass

# Coarse tokens: runs of letters, runs of digits, or any single non-space symbol.
_TOKEN_RE = re.compile(r"[^\W\d_]+|\d+|\S", flags=re.UNICODE)
_LETTER_RE = re.compile(r"[^\W\d_]", flags=re.UNICODE)


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text or "")


def count_letters(text: str) -> int:
    return len(_LETTER_RE.findall(text or ""))


def is_letter(ch: str) -> bool:
    return bool(ch) and bool(_LETTER_RE.fullmatch(ch))


def token_edit_distance(a: list[str], b: list[str]) -> int:
    """Levenshtein distance over token lists (two-row DP)."""
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, tok_a in enumerate(a, start=1):
        cur = [i] + [0] * len(b)
        for j, tok_b in enumerate(b, start=1):
            cost = 0 if tok_a == tok_b else 1
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost)
        prev = cur
    return prev[-1]


@dataclass(frozen=True)
class EditMeasure:
    changed_tokens: int
    original_tokens: int
    replacement_tokens: int


def measure_edit(original: str, replacement: str) -> EditMeasure:
    a = tokenize(original)
    b = tokenize(replacement)
    return EditMeasure(
        changed_tokens=token_edit_distance(a, b),
        original_tokens=len(a),
        replacement_tokens=len(b),
    )
