"""Sentence, paragraph and grapheme segmentation.

Sentence boundaries come from NLTK Punkt models when the model data for the requested
locale is installed.  Otherwise a deterministic heuristic is used: split after ``.``, ``!``
or ``?`` (skipping common abbreviations) and at blank lines, keeping closing quotes,
brackets and trailing whitespace with the sentence they close.

All sentence ranges returned here are ordered, non-overlapping and contiguous: together they
cover the whole text.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from functools import lru_cache

from nltk.tokenize.punkt import PunktTokenizer

from .models import Range
from .ranges import clamp

_ABBREV_RE = re.compile(r"\b(?:e\.g|i\.e|Mr|Ms|Mrs|Dr|Prof|Sr|Jr|vs|approx)\.$")
_TERMINATORS = ".!?…"
_CLOSERS = ")]}\"'”’»"
_PARAGRAPH_BREAK_RE = re.compile(r"\n[^\S\n]*\n\s*")

_LOCALE_TO_PUNKT = {
    "cs": "czech",
    "da": "danish",
    "de": "german",
    "el": "greek",
    "en": "english",
    "es": "spanish",
    "et": "estonian",
    "fi": "finnish",
    "fr": "french",
    "it": "italian",
    "ml": "malayalam",
    "nb": "norwegian",
    "nl": "dutch",
    "no": "norwegian",
    "pl": "polish",
    "pt": "portuguese",
    "ru": "russian",
    "sl": "slovene",
    "sv": "swedish",
    "tr": "turkish",
}

SEGMENTATION_ENGINES = {"auto", "punkt", "heuristic"}

_ZWJ = "\u200d"
# Prepended concatenation marks: they attach to the following character.
_PREPEND = frozenset("\u0600\u0601\u0602\u0603\u0604\u0605\u06dd\u070f\u08e2\U000110bd\U000110cd")


def punkt_language(locale: str) -> str | None:
    base = re.split(r"[-_]", (locale or "").strip().lower(), maxsplit=1)[0]
    return _LOCALE_TO_PUNKT.get(base)


@lru_cache(maxsize=16)
def _load_punkt(language: str) -> PunktTokenizer | None:
    try:
        return PunktTokenizer(language)
    except LookupError:
        return None


def _contiguous(ranges: list[Range], length: int) -> list[Range]:
    """Stretch sentence ranges so they tile ``[0, length)`` without overlap."""
    starts = sorted({r.start for r in ranges if r.end > r.start and 0 <= r.start < length})
    if not starts:
        return [Range(0, length)] if length > 0 else []
    starts[0] = 0
    ends = starts[1:] + [length]
    return [Range(s, e) for s, e in zip(starts, ends, strict=True) if e > s]


def _split_on_paragraph_breaks(ranges: list[Range], text: str) -> list[Range]:
    breaks = [m.end() for m in _PARAGRAPH_BREAK_RE.finditer(text)]
    if not breaks:
        return ranges
    out: list[Range] = []
    for rng in ranges:
        start = rng.start
        for pos in breaks:
            if start < pos < rng.end:
                out.append(Range(start, pos))
                start = pos
        out.append(Range(start, rng.end))
    return out


def is_abbreviation_at(text: str, idx: int) -> bool:
    return bool(_ABBREV_RE.search(text[max(0, idx - 8) : idx + 1]))


def heuristic_sentence_ranges(text: str) -> list[Range]:
    n = len(text)
    out: list[Range] = []
    start = 0

    def _push(end: int) -> None:
        nonlocal start
        if end > start:
            out.append(Range(start, end))
        start = end

    i = 0
    while i < n:
        ch = text[i]
        if ch == "\n" and i + 1 < n and text[i + 1] == "\n":
            j = i + 2
            while j < n and text[j] == "\n":
                j += 1
            _push(j)
            i = j
            continue
        if ch in _TERMINATORS:
            if ch == "." and is_abbreviation_at(text, i):
                i += 1
                continue
            j = i + 1
            while j < n and text[j] in _TERMINATORS:
                j += 1
            # "3.14", "e.g", "example.com": no boundary without a following space or closer.
            if j < n and not (text[j].isspace() or text[j] in _CLOSERS):
                i = j
                continue
            while j < n and text[j] in _CLOSERS:
                j += 1
            while j < n and text[j].isspace():
                j += 1
            _push(j)
            i = j
            continue
        i += 1
    if start < n:
        out.append(Range(start, n))
    return _contiguous(out, n)


def punkt_sentence_ranges(text: str, language: str) -> list[Range]:
    tokenizer = _load_punkt(language)
    if tokenizer is None:
        raise LookupError(f"NLTK Punkt model for {language!r} is not installed")
    spans = [Range(s, e) for s, e in tokenizer.span_tokenize(text)]
    if not spans:
        return [Range(0, len(text))] if text else []
    # Each sentence absorbs the whitespace up to the next one; the first starts at 0.
    starts = [0] + [r.start for r in spans[1:]]
    tiled = [Range(s, e) for s, e in zip(starts, starts[1:] + [len(text)], strict=False)]
    return _contiguous(_split_on_paragraph_breaks(tiled, text), len(text))


@lru_cache(maxsize=64)
def _sentence_ranges_cached(text: str, locale: str, engine: str) -> tuple[Range, ...]:
    if engine == "heuristic":
        return tuple(heuristic_sentence_ranges(text))
    language = punkt_language(locale)
    if engine == "punkt":
        if language is None:
            raise LookupError(f"No Punkt model for locale {locale!r}")
        return tuple(punkt_sentence_ranges(text, language))
    if language is not None and _load_punkt(language) is not None:
        return tuple(punkt_sentence_ranges(text, language))
    return tuple(heuristic_sentence_ranges(text))


@dataclass(frozen=True)
class Segmenter:
    locale: str = "en"
    engine: str = "auto"  # 'auto' | 'punkt' | 'heuristic'

    def __post_init__(self) -> None:
        if self.engine not in SEGMENTATION_ENGINES:
            allowed = ", ".join(sorted(SEGMENTATION_ENGINES))
            raise ValueError(f"Invalid segmentation engine: {self.engine!r}. Allowed: {allowed}")

    def sentences(self, text: str) -> list[Range]:
        if not text:
            return []
        return list(_sentence_ranges_cached(text, self.locale, self.engine))

    def sentence_containing(self, text: str, rng: Range) -> Range | None:
        for sent in self.sentences(text):
            if sent.start <= rng.start and rng.end <= sent.end:
                return sent
        return None


DEFAULT_SEGMENTER = Segmenter()


def sentence_ranges(text: str, locale: str = "en", engine: str = "auto") -> list[Range]:
    return Segmenter(locale=locale, engine=engine).sentences(text)


def paragraph_ranges(text: str) -> list[Range]:
    """Spans of text separated by blank lines (separators excluded)."""
    out: list[Range] = []
    start = 0
    for m in _PARAGRAPH_BREAK_RE.finditer(text):
        if m.start() > start:
            out.append(Range(start, m.start()))
        start = m.end()
    if start < len(text):
        out.append(Range(start, len(text)))
    return out


def paragraph_index_of(rng: Range, paragraphs: list[Range]) -> int:
    for idx, para in enumerate(paragraphs):
        if para.start <= rng.start and rng.end <= para.end:
            return idx
    # Ranges straddling a break count toward the paragraph they start in.
    best = 0
    for idx, para in enumerate(paragraphs):
        if para.start <= rng.start:
            best = idx
    return best


def _is_regional_indicator(ch: str) -> bool:
    return "\U0001f1e6" <= ch <= "\U0001f1ff"


def _extends_cluster(ch: str) -> bool:
    if ch == _ZWJ:
        return True
    if "\ufe00" <= ch <= "\ufe0f" or "\U000e0100" <= ch <= "\U000e01ef":
        return True
    if "\U0001f3fb" <= ch <= "\U0001f3ff":
        return True
    if "\U000e0020" <= ch <= "\U000e007f":
        return True
    return unicodedata.category(ch).startswith("M")


def _hangul_kind(ch: str) -> str | None:
    cp = ord(ch)
    if 0x1100 <= cp <= 0x115F or 0xA960 <= cp <= 0xA97F:
        return "L"
    if 0x1160 <= cp <= 0x11A7 or 0xD7B0 <= cp <= 0xD7C6:
        return "V"
    if 0x11A8 <= cp <= 0x11FF or 0xD7CB <= cp <= 0xD7FB:
        return "T"
    if 0xAC00 <= cp <= 0xD7A3:
        return "LV" if (cp - 0xAC00) % 28 == 0 else "LVT"
    return None


def _joins_hangul(prev: str, cur: str) -> bool:
    a, b = _hangul_kind(prev), _hangul_kind(cur)
    if a is None or b is None:
        return False
    if a == "L":
        return b in {"L", "V", "LV", "LVT"}
    if a in {"LV", "V"}:
        return b in {"V", "T"}
    return b == "T"


def is_grapheme_boundary(text: str, idx: int) -> bool:
    """Approximate UAX #29 extended grapheme cluster boundary at ``idx``.

    Covers CR LF, combining marks and other extenders, ZWJ sequences, regional-indicator
    pairs, Hangul syllable sequences and prepended concatenation marks. SpacingMark and
    Indic conjunct rules are not modelled.
    """
    if idx <= 0 or idx >= len(text):
        return True
    prev, cur = text[idx - 1], text[idx]
    if prev == "\r" and cur == "\n":
        return False
    if unicodedata.category(prev) == "Cc" or unicodedata.category(cur) == "Cc":
        return True
    if prev in _PREPEND:
        return False
    if _joins_hangul(prev, cur):
        return False
    if _extends_cluster(cur):
        return False
    if prev == _ZWJ and not cur.isspace():
        return False
    if _is_regional_indicator(prev) and _is_regional_indicator(cur):
        run = 0
        j = idx - 1
        while j >= 0 and _is_regional_indicator(text[j]):
            run += 1
            j -= 1
        return run % 2 == 0
    return True


def grapheme_snap(text: str, rng: Range) -> Range:
    """Widen ``rng`` outward to the nearest grapheme-cluster boundaries."""
    clamped = clamp(rng, len(text))
    start, end = clamped.start, clamped.end
    while start > 0 and not is_grapheme_boundary(text, start):
        start -= 1
    while end < len(text) and not is_grapheme_boundary(text, end):
        end += 1
    return Range(start, end)
