from __future__ import annotations

import re
from collections.abc import Iterator

from .cache import sha256_hex
from .models import Category, DiffKind, Range, Severity, Source, Suggestion
from .segmentation import is_abbreviation_at

_MULTI_SPACE_RE = re.compile(r"[^\S\n]{2,}")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"(\s+)([,.!?;:])(?!\w)")
_REPEATED_WORD_RE = re.compile(r"\b(\w+)(\s+)(\1)\b", flags=re.IGNORECASE)
_NO_SPACE_AFTER_PUNCT_RE = re.compile(r"([,.!?;:])([^\W\d_])")
_SENTENCE_START_LOWER_RE = re.compile(r"(\A\s*|[.!?][\"')\]]*\s+|\n[^\S\n]*\n\s*)([a-z])")
_REPEATED_PUNCT_RE = re.compile(r"([.!?])\1+")
_COLON_SPACES_RE = re.compile(r":([^\S\n]{2,})")
_SPACED_HYPHEN_RE = re.compile(r"(?<=\S)[^\S\n]-[^\S\n](?=\S)")
_ELLIPSIS_RE = re.compile(r"\.\.\.")
_TERMINAL_CLOSERS = ")]}\"'”’»*_"

MISSPELLINGS: dict[str, str] = {
    "accomodate": "accommodate",
    "acheive": "achieve",
    "definately": "definitely",
    "occurance": "occurrence",
    "occured": "occurred",
    "recieve": "receive",
    "seperate": "separate",
    "untill": "until",
    "wich": "which",
}
_MISSPELLING_RE = re.compile(r"\b(" + "|".join(sorted(MISSPELLINGS)) + r")\b", flags=re.IGNORECASE)


def _suggestion(
    text: str,
    *,
    rule: str,
    start: int,
    end: int,
    replacement: str,
    title: str,
    message: str,
    category: Category,
    severity: Severity,
    diff_kind: DiffKind,
) -> Suggestion:
    original = text[start:end]
    return Suggestion(
        id=f"local-{rule}-{start}-{end}",
        title=title,
        message=message,
        category=category,
        severity=severity,
        range=Range(start, end),
        replacement=replacement,
        source=Source.LOCAL,
        original=original,
        checksum=sha256_hex(original) if original else None,
        diff_kind=diff_kind,
    )


def _match_case(wrong: str, right: str) -> str:
    if wrong.isupper() and len(wrong) > 1:
        return right.upper()
    if wrong[:1].isupper():
        return right[:1].upper() + right[1:]
    return right


def _multiple_spaces(text: str) -> Iterator[Suggestion]:
    for m in _MULTI_SPACE_RE.finditer(text):
        yield _suggestion(
            text,
            rule="multi-space",
            start=m.start(),
            end=m.end(),
            replacement=" ",
            title="Change the spacing",
            message="Reduce multiple spaces to a single space.",
            category=Category.SPACING,
            severity=Severity.INFO,
            diff_kind=DiffKind.WHITESPACE,
        )


def _space_before_punctuation(text: str) -> Iterator[Suggestion]:
    for m in _SPACE_BEFORE_PUNCT_RE.finditer(text):
        yield _suggestion(
            text,
            rule="space-before-punct",
            start=m.start(1),
            end=m.end(1),
            replacement="",
            title="Use correct spacing",
            message="Remove the space before punctuation.",
            category=Category.SPACING,
            severity=Severity.INFO,
            diff_kind=DiffKind.WHITESPACE,
        )


def _missing_terminal_punctuation(text: str) -> Iterator[Suggestion]:
    trimmed = text.rstrip()
    if not trimmed:
        return
    core = trimmed.rstrip(_TERMINAL_CLOSERS)
    if core and core[-1] in ".!?…:;":
        return
    if not core:
        return
    start = len(trimmed)
    end = len(text)
    yield _suggestion(
        text,
        rule="terminal-punct",
        start=start,
        end=end,
        # Keep the trailing whitespace exactly as it was.
        replacement="." + text[start:end],
        title="Punctuation mistake",
        message="Add a period at the end of the sentence.",
        category=Category.PUNCTUATION,
        severity=Severity.WARN,
        diff_kind=DiffKind.PUNCTUATION,
    )


def _repeated_words(text: str) -> Iterator[Suggestion]:
    for m in _REPEATED_WORD_RE.finditer(text):
        if m.group(1).isdigit():
            continue
        yield _suggestion(
            text,
            rule="repeated-word",
            start=m.start(),
            end=m.end(),
            replacement=m.group(1),
            title="Repeated word",
            message=f'Remove duplicate "{m.group(1)}".',
            category=Category.STYLE,
            severity=Severity.INFO,
            diff_kind=DiffKind.WORDING,
        )


def _missing_space_after_punctuation(text: str) -> Iterator[Suggestion]:
    for m in _NO_SPACE_AFTER_PUNCT_RE.finditer(text):
        # Dotted abbreviations such as "e.g." or "U.S." are not missing a space.
        if m.group(1) == "." and m.end() < len(text) and text[m.end()] == ".":
            continue
        yield _suggestion(
            text,
            rule="space-after-punct",
            start=m.start(),
            end=m.end(),
            replacement=f"{m.group(1)} {m.group(2)}",
            title="Add space after punctuation",
            message="Insert a space after punctuation.",
            category=Category.SPACING,
            severity=Severity.INFO,
            diff_kind=DiffKind.WHITESPACE,
        )


def _lowercase_sentence_start(text: str) -> Iterator[Suggestion]:
    for m in _SENTENCE_START_LOWER_RE.finditer(text):
        lead = m.group(1)
        if lead.startswith(".") and is_abbreviation_at(text, m.start(1)):
            continue
        idx = m.start(2)
        yield _suggestion(
            text,
            rule="capitalize",
            start=idx,
            end=idx + 1,
            replacement=m.group(2).upper(),
            title="Capitalize sentence",
            message="Capitalize the first letter of the sentence.",
            category=Category.STYLE,
            severity=Severity.INFO,
            diff_kind=DiffKind.CASE,
        )


def _repeated_punctuation(text: str) -> Iterator[Suggestion]:
    for m in _REPEATED_PUNCT_RE.finditer(text):
        if m.group(0) == "...":
            continue
        yield _suggestion(
            text,
            rule="repeated-punct",
            start=m.start(),
            end=m.end(),
            replacement=m.group(1),
            title="Reduce punctuation",
            message="Use a single punctuation mark.",
            category=Category.PUNCTUATION,
            severity=Severity.INFO,
            diff_kind=DiffKind.PUNCTUATION,
        )


def _colon_spacing(text: str) -> Iterator[Suggestion]:
    for m in _COLON_SPACES_RE.finditer(text):
        yield _suggestion(
            text,
            rule="colon-space",
            start=m.start(1),
            end=m.end(1),
            replacement=" ",
            title="Normalize colon spacing",
            message="Use a single space after a colon.",
            category=Category.SPACING,
            severity=Severity.INFO,
            diff_kind=DiffKind.WHITESPACE,
        )


def _spaced_hyphen(text: str) -> Iterator[Suggestion]:
    for m in _SPACED_HYPHEN_RE.finditer(text):
        left = text[m.start() - 1]
        right = text[m.end()] if m.end() < len(text) else ""
        if left.isdigit() and right.isdigit():
            continue
        yield _suggestion(
            text,
            rule="em-dash",
            start=m.start(),
            end=m.end(),
            replacement="—",
            title="Use an em dash",
            message="Replace spaced hyphen with an em dash.",
            category=Category.STYLE,
            severity=Severity.INFO,
            diff_kind=DiffKind.PUNCTUATION,
        )


def _ellipsis(text: str) -> Iterator[Suggestion]:
    for m in _ELLIPSIS_RE.finditer(text):
        yield _suggestion(
            text,
            rule="ellipsis",
            start=m.start(),
            end=m.end(),
            replacement="…",
            title="Use ellipsis character",
            message="Replace three dots with a single ellipsis (…).",
            category=Category.STYLE,
            severity=Severity.INFO,
            diff_kind=DiffKind.PUNCTUATION,
        )


def _misspellings(text: str) -> Iterator[Suggestion]:
    for m in _MISSPELLING_RE.finditer(text):
        wrong = m.group(0)
        right = MISSPELLINGS.get(wrong.lower())
        if right is None:
            continue
        replacement = _match_case(wrong, right)
        yield _suggestion(
            text,
            rule="spelling",
            start=m.start(),
            end=m.end(),
            replacement=replacement,
            title="Spelling",
            message=f'Replace "{wrong}" with "{replacement}".',
            category=Category.SPELLING,
            severity=Severity.WARN,
            diff_kind=DiffKind.WORDING,
        )


RULES = (
    _multiple_spaces,
    _space_before_punctuation,
    _missing_terminal_punctuation,
    _repeated_words,
    _missing_space_after_punctuation,
    _lowercase_sentence_start,
    _repeated_punctuation,
    _colon_spacing,
    _spaced_hyphen,
    _ellipsis,
    _misspellings,
)


def analyze(text: str) -> list[Suggestion]:
    """Deterministic local pass: every rule in order, de-duplicated and sorted by start."""
    seen: set[tuple[int, int, str, str]] = set()
    out: list[Suggestion] = []
    for rule in RULES:
        for s in rule(text):
            key = (s.range.start, s.range.end, s.title, s.replacement)
            if key in seen:
                continue
            seen.add(key)
            out.append(s)
    out.sort(key=lambda s: s.range.start)
    return out
