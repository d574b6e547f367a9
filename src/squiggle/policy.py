"""Terminal filter over merged local and model candidates.

``reconcile`` runs the stages strictly in order: sanitize, priority sort, category gate,
confidence gate, greedy overlap rejection, near-duplicate collapse, spacing sanity, category
quotas and finally the style sub-pipeline (stricter confidence, minimality, per-paragraph
density and a global budget).  The output is non-overlapping and sorted by start.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass, replace
from typing import Any

from .config import PolicyConfig
from .edit_distance import is_letter, measure_edit, tokenize
from .models import CORRECTNESS_CATEGORIES, Category, Range, Source, Suggestion
from .normalize import adds_letters
from .ranges import conflicts, ordered
from .segmentation import DEFAULT_SEGMENTER, Segmenter, paragraph_index_of, paragraph_ranges

_SPACE_RE = re.compile(r"\s+")
_BOUNDARY_PUNCT_RE = re.compile(r"[.,!?:;]")
_NO_SENTENCE_CONTEXT = 40


@dataclass(frozen=True)
class StyleBudget:
    global_cap: int
    per_paragraph_with_correctness: int


@dataclass(frozen=True)
class MinimalityVerdict:
    ok: bool
    reason: str | None = None
    changed_tokens: int | None = None


def _bump(stats_out: dict[str, Any] | None, key: str, by: int = 1) -> None:
    if stats_out is None:
        return
    stats_out[key] = int(stats_out.get(key, 0)) + by


def _norm(value: str | None) -> str:
    return _SPACE_RE.sub(" ", value or "").strip().lower()


def style_budgets(text_len: int, correctness_count: int, policy: PolicyConfig = PolicyConfig()) -> StyleBudget:
    """Global style allowance for a text.

    ``per1k = min(base, floor(ratio * correctness))`` edits per started 1000 characters.  With no
    correctness signal at all ``per1k`` is zero and the flat ``style_floor`` applies instead.
    """
    per1k = min(policy.style_per_1k_base, math.floor(policy.style_ratio_of_correctness * correctness_count))
    if per1k > 0:
        global_cap = per1k * math.ceil(max(0, text_len) / 1000)
    else:
        global_cap = policy.style_floor
    return StyleBudget(global_cap=global_cap, per_paragraph_with_correctness=policy.paragraph_style_cap)


def containing_sentence_token_count(
    text: str,
    rng: Range,
    *,
    segmenter: Segmenter = DEFAULT_SEGMENTER,
) -> int:
    sent = segmenter.sentence_containing(text, rng)
    if sent is None:
        sent = Range(max(0, rng.start - _NO_SENTENCE_CONTEXT), min(len(text), rng.end + _NO_SENTENCE_CONTEXT))
    return len(tokenize(text[sent.start : sent.end])) or 1


def violates_boundary(s: Suggestion, text: str) -> bool:
    """Punctuation dropped between two letters, i.e. in the middle of a token."""
    if not _BOUNDARY_PUNCT_RE.search(s.replacement):
        return False
    left = text[s.start - 1] if s.start > 0 else ""
    right = text[s.end] if s.end < len(text) else ""
    return is_letter(left) and is_letter(right)


def style_minimality(
    s: Suggestion,
    text: str,
    policy: PolicyConfig = PolicyConfig(),
    *,
    segmenter: Segmenter = DEFAULT_SEGMENTER,
) -> MinimalityVerdict:
    original = s.original if s.original is not None else text[s.start : s.end]
    measure = measure_edit(original, s.replacement)
    sentence_tokens = containing_sentence_token_count(text, s.range, segmenter=segmenter)
    ratio = measure.changed_tokens / max(1, sentence_tokens)
    always_allowed = s.diff_kind.value in policy.diff_kinds_always_allowed

    if violates_boundary(s, text):
        return MinimalityVerdict(ok=False, reason="boundary")
    if not always_allowed and adds_letters(original, s.replacement):
        return MinimalityVerdict(ok=False, reason="adds_letters")
    if not always_allowed and ratio > policy.max_token_change_ratio:
        return MinimalityVerdict(ok=False, reason="ratio")
    return MinimalityVerdict(ok=True, changed_tokens=measure.changed_tokens)


def _priority(s: Suggestion) -> tuple[int, int]:
    return (0 if s.source is Source.LOCAL else 1, s.start)


def _is_near_duplicate(s: Suggestion, accepted: list[Suggestion], tolerance: int) -> bool:
    key = (_norm(s.original), _norm(s.replacement), s.title)
    for other in accepted:
        if abs(other.start - s.start) > tolerance:
            continue
        if (_norm(other.original), _norm(other.replacement), other.title) == key:
            return True
    return False


def _style_pass(
    candidates: list[Suggestion],
    accepted: list[Suggestion],
    text: str,
    policy: PolicyConfig,
    segmenter: Segmenter,
    stats_out: dict[str, Any] | None,
) -> list[Suggestion]:
    correctness = [s for s in accepted if s.category in CORRECTNESS_CATEGORIES]
    budget = style_budgets(len(text), len(correctness), policy)
    if stats_out is not None:
        stats_out["style_global_budget"] = budget.global_cap

    paragraphs = paragraph_ranges(text)
    correctness_per_para = Counter(paragraph_index_of(s.range, paragraphs) for s in correctness)
    style_per_para: Counter[int] = Counter()

    kept: list[Suggestion] = []
    for s in candidates:
        confidence = 1.0 if s.confidence is None else s.confidence
        if confidence < policy.min_confidence_style:
            _bump(stats_out, "style_dropped_confidence")
            continue
        verdict = style_minimality(s, text, policy, segmenter=segmenter)
        if not verdict.ok:
            _bump(stats_out, "style_dropped_boundary" if verdict.reason == "boundary" else "style_dropped_minimality")
            continue
        para = paragraph_index_of(s.range, paragraphs)
        if correctness_per_para[para] > 0 and style_per_para[para] >= budget.per_paragraph_with_correctness:
            _bump(stats_out, "style_dropped_density")
            continue
        if len(kept) >= budget.global_cap:
            _bump(stats_out, "style_dropped_budget")
            continue
        kept.append(replace(s, changed_tokens=verdict.changed_tokens))
        style_per_para[para] += 1
    if stats_out is not None:
        stats_out["style_kept"] = len(kept)
    return kept


def reconcile(
    candidates: list[Suggestion],
    full_text: str,
    policy: PolicyConfig | None = None,
    *,
    segmenter: Segmenter = DEFAULT_SEGMENTER,
    stats_out: dict[str, Any] | None = None,
) -> list[Suggestion]:
    policy = policy or PolicyConfig()
    n = len(full_text)
    _bump(stats_out, "policy_in", len(candidates))

    sane: list[Suggestion] = []
    for s in candidates:
        rng = ordered(s.range)
        if rng.start < 0 or rng.end > n:
            _bump(stats_out, "policy_dropped_bounds")
            continue
        sane.append(s if rng == s.range else s.with_range(rng))

    sane.sort(key=_priority)

    accepted: list[Suggestion] = []
    counts: Counter[Category] = Counter()
    for s in sane:
        quota = policy.quota_for(s.category)
        if quota == 0:
            _bump(stats_out, "policy_dropped_category")
            continue
        confidence = 1.0 if s.confidence is None else s.confidence
        if confidence < policy.min_confidence_for(s.category):
            _bump(stats_out, "policy_dropped_confidence")
            continue
        if any(conflicts(s.range, other.range) for other in accepted):
            _bump(stats_out, "policy_dropped_overlap")
            continue
        if _is_near_duplicate(s, accepted, policy.near_duplicate_chars):
            _bump(stats_out, "policy_dropped_near_duplicate")
            continue
        original = s.original if s.original is not None else full_text[s.start : s.end]
        if s.category is Category.SPACING and adds_letters(original, s.replacement):
            _bump(stats_out, "policy_dropped_spacing_letters")
            continue
        counts[s.category] += 1
        if quota is not None and counts[s.category] > quota:
            _bump(stats_out, "policy_dropped_quota")
            continue
        accepted.append(s)

    non_style = [s for s in accepted if s.category is not Category.STYLE]
    style = _style_pass(
        [s for s in accepted if s.category is Category.STYLE],
        non_style,
        full_text,
        policy,
        segmenter,
        stats_out,
    )

    out = non_style + style
    out.sort(key=lambda s: (s.start, 0 if s.source is Source.LOCAL else 1))
    if stats_out is not None:
        stats_out["policy_out"] = len(out)
    return out
