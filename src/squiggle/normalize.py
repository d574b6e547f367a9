from __future__ import annotations

import json
import math
import re
from collections.abc import Sequence
from typing import Any

from .cache import sha256_hex
from .edit_distance import count_letters, is_letter
from .locate import relocate
from .models import (
    Category,
    Chunk,
    DropReason,
    Range,
    Source,
    Suggestion,
    coerce_category,
    coerce_diff_kind,
    coerce_severity,
)
from .ranges import clamp_int, intersects_any, ordered, within_any
from .segmentation import DEFAULT_SEGMENTER, Segmenter

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", flags=re.IGNORECASE)

DEFAULT_MAX_REPLACEMENT_CHARS = 400


def _bump(stats_out: dict[str, Any] | None, key: str, by: int = 1) -> None:
    if stats_out is None:
        return
    stats_out[key] = int(stats_out.get(key, 0)) + by


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def extract_json_payload(raw: str) -> Any:
    text = (raw or "").strip()
    if not text:
        raise ValueError("Empty model response")

    candidates: list[str] = [text]
    for match in _JSON_FENCE_RE.finditer(text):
        inner = (match.group(1) or "").strip()
        if inner:
            candidates.append(inner)
    obj_start = text.find("{")
    obj_end = text.rfind("}")
    if obj_start >= 0 and obj_end > obj_start:
        candidates.append(text[obj_start : obj_end + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise ValueError("Model response is not valid JSON")


def parse_model_suggestions(raw: str) -> list[Any]:
    """Raw suggestion items from a model response (items are not validated here)."""
    payload = extract_json_payload(raw)
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        raise ValueError("Model response must be a JSON object")
    items = payload.get("suggestions", [])
    if not isinstance(items, list):
        raise ValueError("Model response 'suggestions' must be a list")
    return items


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def normalize_candidate(
    raw: Any,
    chunk: Chunk,
    text: str,
    *,
    chunk_index: int = 0,
    item_index: int = 0,
    stats_out: dict[str, Any] | None = None,
) -> Suggestion | None:
    """Canonical suggestion from one untrusted model item, in ``text`` coordinates.

    Chunk-relative offsets are translated by removing the read-only prefix and adding the
    chunk start, then clamped to the text.  Items without a numeric range, or whose range
    starts inside the prefix, are dropped and counted.
    """
    rng = raw.get("range") if isinstance(raw, dict) else None
    if not isinstance(rng, dict) or not _is_number(rng.get("start")) or not _is_number(rng.get("end")):
        _bump(stats_out, f"dropped_{DropReason.MALFORMED.value}")
        return None

    raw_start = int(rng["start"])
    raw_end = int(rng["end"])
    if raw_start < chunk.prefix_len:
        _bump(stats_out, f"dropped_{DropReason.PREFIX.value}")
        return None

    n = len(text)
    start = clamp_int(raw_start - chunk.prefix_len + chunk.start, 0, n)
    end = clamp_int(raw_end - chunk.prefix_len + chunk.start, 0, n)

    declared = raw.get("original")
    if isinstance(declared, str):
        original = declared
    else:
        span = ordered(Range(start, end))
        original = text[span.start : span.end]

    confidence = raw.get("confidence")
    if not _is_number(confidence) or not 0.0 <= float(confidence) <= 1.0:
        confidence = None
    changed_tokens = raw.get("changedTokens")
    if not _is_number(changed_tokens):
        changed_tokens = None

    replacement = raw.get("replacement")
    return Suggestion(
        id=f"ai-{chunk_index}-{item_index}",
        title=str(raw.get("title") or "Suggestion"),
        message=str(raw["message"]) if raw.get("message") else None,
        category=coerce_category(raw.get("category") or "other"),
        severity=coerce_severity(raw.get("severity") or "info"),
        range=Range(start, end),
        replacement="" if replacement is None else str(replacement),
        source=Source.AI,
        original=original,
        before=_optional_str(raw.get("before")),
        after=_optional_str(raw.get("after")),
        confidence=None if confidence is None else float(confidence),
        checksum=sha256_hex(original) if original else None,
        diff_kind=coerce_diff_kind(raw.get("diffKind")),
        changed_tokens=None if changed_tokens is None else int(changed_tokens),
        justification=_optional_str(raw.get("justification")),
    )


def markup_drop_reason(
    rng: Range,
    forbidden: Sequence[Range],
    prose: Sequence[Range] | None,
) -> DropReason | None:
    """``None`` when ``rng`` is clear of forbidden spans and (if given) inside prose."""
    if intersects_any(rng, forbidden):
        return DropReason.FORBIDDEN
    if prose is not None and not within_any(rng, prose):
        return DropReason.OUTSIDE_PROSE
    return None


def reconcile_candidate(
    s: Suggestion,
    text: str,
    *,
    segmenter: Segmenter = DEFAULT_SEGMENTER,
) -> Suggestion | None:
    """Re-anchor ``s`` on its declared ``original``; ``None`` if it cannot be found."""
    if not s.original:
        return s
    found = relocate(
        text,
        s.range,
        s.original,
        s.replacement,
        s.before,
        s.after,
        segmenter=segmenter,
    )
    if found is None:
        return None
    if found == s.range:
        return s
    return s.with_range(found)


def adds_letters(original: str, replacement: str) -> bool:
    return count_letters(replacement) > count_letters(original)


def sanity_ok(s: Suggestion, text: str, max_replacement_chars: int = DEFAULT_MAX_REPLACEMENT_CHARS) -> bool:
    start, end = s.start, s.end
    if end < start or start < 0 or end > len(text):
        return False
    if len(s.replacement) > max_replacement_chars:
        return False
    original = s.original if s.original is not None else text[start:end]
    # A "?" dropped between two letters is almost always a broken mid-word edit.
    if "?" in s.replacement and "?" not in original and s.category is not Category.PUNCTUATION:
        left = text[start - 1] if start > 0 else ""
        right = text[end] if end < len(text) else ""
        if is_letter(left) and is_letter(right):
            return False
    if s.category is Category.SPACING and adds_letters(original, s.replacement):
        return False
    return True


def normalize_chunk_response(
    raw: str,
    chunk: Chunk,
    text: str,
    *,
    chunk_index: int,
    forbidden: Sequence[Range] = (),
    prose: Sequence[Range] | None = None,
    full_text: str | None = None,
    offset: int = 0,
    segmenter: Segmenter = DEFAULT_SEGMENTER,
    max_replacement_chars: int = DEFAULT_MAX_REPLACEMENT_CHARS,
    stats_out: dict[str, Any] | None = None,
) -> list[Suggestion]:
    """Turn one model response into reconciled candidates in full-text coordinates.

    ``text`` is the analysed slice and ``offset`` its position in ``full_text``.  Steps, in
    order: parse, normalize, markup filter (slice coordinates), shift, relocate against the
    full text, markup filter again on the relocated range, sanity guard.  An unparseable
    response yields no candidates.
    """
    target = text if full_text is None else full_text
    try:
        items = parse_model_suggestions(raw)
    except ValueError:
        _bump(stats_out, "responses_unparseable")
        return []
    _bump(stats_out, "candidates_parsed", len(items))

    out: list[Suggestion] = []
    for idx, item in enumerate(items):
        s = normalize_candidate(item, chunk, text, chunk_index=chunk_index, item_index=idx, stats_out=stats_out)
        if s is None:
            continue
        reason = markup_drop_reason(s.range, forbidden, prose)
        if reason is not None:
            _bump(stats_out, f"dropped_{reason.value}")
            continue
        moved = reconcile_candidate(s.shifted(offset), target, segmenter=segmenter)
        if moved is None:
            _bump(stats_out, f"dropped_{DropReason.RELOCATION_FAILED.value}")
            continue
        # Relocation may land on an occurrence inside code or other non-prose markup.
        if moved.range != s.range.shift(offset):
            reason = markup_drop_reason(moved.range.shift(-offset), forbidden, prose)
            if reason is not None:
                _bump(stats_out, f"dropped_{reason.value}")
                continue
        if not sanity_ok(moved, target, max_replacement_chars):
            _bump(stats_out, f"dropped_{DropReason.SANITY.value}")
            continue
        out.append(moved)
    _bump(stats_out, "candidates_kept", len(out))
    return out
