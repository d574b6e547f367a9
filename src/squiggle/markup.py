"""Regex-based Markdown structure detection.

Supplies the two range sets the engine needs: ``forbidden_ranges`` (code, HTML, tables,
autolinks, bare URLs and link targets never receive edits) and ``prose_ranges`` (paragraph
and heading blocks that may).  Any callable with the same signature can replace these.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from .models import Range
from .ranges import merge

RangeProvider = Callable[[str], list[Range]]

_FENCE_OPEN_RE = re.compile(r"^[ \t]{0,3}(`{3,}|~{3,})")
_INLINE_CODE_RE = re.compile(r"(`+)(?!`)[\s\S]*?(?<!`)\1(?!`)")
_HTML_TAG_RE = re.compile(r"<(?:[A-Za-z][A-Za-z0-9-]*(?:\s[^<>]*)?/?|/[A-Za-z][A-Za-z0-9-]*\s*|!--[\s\S]*?--)>")
_AUTOLINK_RE = re.compile(r"<(?:https?|ftp|mailto):[^<>\s]+>", flags=re.IGNORECASE)
_LINK_TARGET_RE = re.compile(r"\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")
_BARE_URL_RE = re.compile(r"https?://\S+")
_TABLE_LINE_RE = re.compile(r"^[ \t]*\|.*$|^[ \t]*:?-{3,}:?[ \t]*(?:\|[ \t]*:?-{3,}:?[ \t]*)+\|?[ \t]*$")
_HTML_BLOCK_RE = re.compile(r"^[ \t]{0,3}<(?:[A-Za-z/!])")


def _lines(text: str) -> list[tuple[int, int, str]]:
    """``(start, end_without_newline, line)`` for every line of ``text``."""
    out: list[tuple[int, int, str]] = []
    pos = 0
    for raw in text.splitlines(keepends=True):
        line = raw.rstrip("\r\n")
        out.append((pos, pos + len(line), line))
        pos += len(raw)
    return out


def fenced_code_ranges(text: str) -> list[Range]:
    out: list[Range] = []
    open_start: int | None = None
    fence = ""
    for start, end, line in _lines(text):
        if open_start is None:
            m = _FENCE_OPEN_RE.match(line)
            if m:
                open_start = start
                fence = m.group(1)
            continue
        stripped = line.strip()
        if stripped.startswith(fence) and set(stripped) == {fence[0]}:
            out.append(Range(open_start, end))
            open_start = None
    if open_start is not None:
        out.append(Range(open_start, len(text)))
    return out


def _table_line_ranges(text: str, skip: list[Range]) -> list[Range]:
    out: list[Range] = []
    for start, end, line in _lines(text):
        if end <= start or any(r.start <= start < r.end for r in skip):
            continue
        if _TABLE_LINE_RE.match(line):
            out.append(Range(start, end))
    return out


def forbidden_ranges(text: str) -> list[Range]:
    fences = fenced_code_ranges(text)
    ranges: list[Range] = list(fences)
    ranges.extend(_table_line_ranges(text, fences))
    for pattern in (_INLINE_CODE_RE, _AUTOLINK_RE, _HTML_TAG_RE, _BARE_URL_RE):
        ranges.extend(Range(m.start(), m.end()) for m in pattern.finditer(text))
    # Only the "(target)" part of "[label](target)" is protected; the label is prose.
    ranges.extend(Range(m.start() + 1, m.end()) for m in _LINK_TARGET_RE.finditer(text))
    return merge(r for r in ranges if r.end > r.start)


def prose_ranges(text: str) -> list[Range]:
    """Blank-line separated blocks outside code fences, tables and HTML blocks."""
    fences = fenced_code_ranges(text)
    out: list[Range] = []
    block_start: int | None = None
    block_end = 0

    def _close() -> None:
        nonlocal block_start
        if block_start is not None and block_end > block_start:
            out.append(Range(block_start, block_end))
        block_start = None

    for start, end, line in _lines(text):
        in_fence = any(r.start <= start < r.end for r in fences)
        if in_fence or not line.strip() or _TABLE_LINE_RE.match(line) or _HTML_BLOCK_RE.match(line):
            _close()
            continue
        if block_start is None:
            block_start = start + (len(line) - len(line.lstrip()))
        block_end = start + len(line.rstrip())
    _close()
    return merge(out)
