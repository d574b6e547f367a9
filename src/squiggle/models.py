from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class Severity(str, Enum):
    ERROR = "error"
    WARN = "warn"
    INFO = "info"


class Category(str, Enum):
    SPACING = "spacing"
    PUNCTUATION = "punctuation"
    SPELLING = "spelling"
    STYLE = "style"
    OTHER = "other"


# Categories that count as "correctness" signal for the style budget.
CORRECTNESS_CATEGORIES = frozenset({Category.SPACING, Category.PUNCTUATION, Category.SPELLING})


class Source(str, Enum):
    LOCAL = "local"
    AI = "ai"


class DiffKind(str, Enum):
    WHITESPACE = "whitespace"
    PUNCTUATION = "punctuation"
    CASE = "case"
    WORDING = "wording"
    UNSPECIFIED = "unspecified"


class DropReason(str, Enum):
    """Why a candidate was discarded. Never surfaced to the end consumer, only counted."""

    MALFORMED = "malformed"
    PREFIX = "prefix"
    FORBIDDEN = "forbidden"
    OUTSIDE_PROSE = "outside_prose"
    RELOCATION_FAILED = "relocation_failed"
    SANITY = "sanity"


def coerce_category(value: Any) -> Category:
    raw = str(value or "").strip().lower()
    try:
        return Category(raw)
    except ValueError:
        return Category.OTHER


def coerce_severity(value: Any) -> Severity:
    raw = str(value or "").strip().lower()
    try:
        return Severity(raw)
    except ValueError:
        return Severity.INFO


def coerce_diff_kind(value: Any) -> DiffKind:
    raw = str(value or "").strip().lower()
    try:
        return DiffKind(raw)
    except ValueError:
        return DiffKind.UNSPECIFIED


@dataclass(frozen=True)
class Range:
    """Half-open character range ``[start, end)``."""

    start: int
    end: int

    def __len__(self) -> int:
        return max(0, self.end - self.start)

    def shift(self, delta: int) -> Range:
        if not delta:
            return self
        return Range(self.start + delta, self.end + delta)

    def to_dict(self) -> dict[str, int]:
        return {"start": self.start, "end": self.end}


@dataclass
class Suggestion:
    id: str
    title: str
    category: Category
    severity: Severity
    range: Range
    replacement: str
    source: Source
    message: Optional[str] = None
    # Substring the detector/model observed, plus short context anchors around it.
    original: Optional[str] = None
    before: Optional[str] = None
    after: Optional[str] = None
    confidence: Optional[float] = None
    checksum: Optional[str] = None
    diff_kind: DiffKind = DiffKind.UNSPECIFIED
    changed_tokens: Optional[int] = None
    justification: Optional[str] = None
    # Soft-delete flag flipped by the editor layer; the record is never removed.
    applied: bool = False

    @property
    def start(self) -> int:
        return self.range.start

    @property
    def end(self) -> int:
        return self.range.end

    def with_range(self, new_range: Range) -> Suggestion:
        return replace(self, range=new_range)

    def shifted(self, delta: int) -> Suggestion:
        if not delta:
            return self
        return replace(self, range=self.range.shift(delta))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "category": self.category.value,
            "severity": self.severity.value,
            "range": self.range.to_dict(),
            "replacement": self.replacement,
            "source": self.source.value,
        }
        if self.message is not None:
            payload["message"] = self.message
        if self.original is not None:
            payload["original"] = self.original
        if self.before is not None:
            payload["before"] = self.before
        if self.after is not None:
            payload["after"] = self.after
        if self.confidence is not None:
            payload["confidence"] = self.confidence
        if self.checksum is not None:
            payload["checksum"] = self.checksum
        if self.diff_kind is not DiffKind.UNSPECIFIED:
            payload["diffKind"] = self.diff_kind.value
        if self.changed_tokens is not None:
            payload["changedTokens"] = self.changed_tokens
        if self.justification is not None:
            payload["justification"] = self.justification
        if self.applied:
            payload["applied"] = True
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Suggestion:
        """Rebuild a suggestion previously produced by ``to_dict`` (trusted input)."""
        rng = data.get("range") or {}
        source_raw = str(data.get("source") or "ai").strip().lower()
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or "Suggestion"),
            category=coerce_category(data.get("category")),
            severity=coerce_severity(data.get("severity")),
            range=Range(int(rng.get("start", 0)), int(rng.get("end", 0))),
            replacement=str(data.get("replacement") or ""),
            source=Source.LOCAL if source_raw == "local" else Source.AI,
            message=data.get("message"),
            original=data.get("original"),
            before=data.get("before"),
            after=data.get("after"),
            confidence=data.get("confidence"),
            checksum=data.get("checksum"),
            diff_kind=coerce_diff_kind(data.get("diffKind")),
            changed_tokens=data.get("changedTokens"),
            justification=data.get("justification"),
            applied=bool(data.get("applied", False)),
        )


@dataclass(frozen=True)
class Chunk:
    """A request chunk: ``content`` is ``text[start - prefix_len:end]``.

    The first ``prefix_len`` characters are read-only context and must not receive suggestions.
    """

    start: int
    end: int
    content: str
    prefix_len: int = 0

    @property
    def primary(self) -> Range:
        return Range(self.start, self.end)


@dataclass
class SuggestResult:
    suggestions: list[Suggestion]
    trace_id: str
    cache_hit: bool = False
    # True when at least one chunk failed upstream and contributed zero candidates.
    partial: bool = False
    stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "suggestions": [s.to_dict() for s in self.suggestions],
            "trace_id": self.trace_id,
            "cache_hit": self.cache_hit,
            "partial": self.partial,
            "stats": self.stats,
        }
