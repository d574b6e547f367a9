from __future__ import annotations

from squiggle.config import PolicyConfig
from squiggle.models import Category, DiffKind, Range, Severity, Source, Suggestion
from squiggle.policy import reconcile, style_budgets, style_minimality
from squiggle.ranges import intersects
from squiggle.segmentation import Segmenter

SEG = Segmenter(engine="heuristic")


def _s(
    start: int,
    end: int,
    replacement: str,
    *,
    category: Category = Category.OTHER,
    source: Source = Source.AI,
    confidence: float | None = None,
    diff_kind: DiffKind = DiffKind.UNSPECIFIED,
    original: str | None = None,
    title: str = "Fix",
) -> Suggestion:
    return Suggestion(
        id=f"{source.value}-{start}-{end}-{replacement}",
        title=title,
        category=category,
        severity=Severity.INFO,
        range=Range(start, end),
        replacement=replacement,
        source=source,
        confidence=confidence,
        diff_kind=diff_kind,
        original=original,
    )


def _assert_clean(out: list[Suggestion]) -> None:
    starts = [s.start for s in out]
    assert starts == sorted(starts)
    for i, a in enumerate(out):
        for b in out[i + 1 :]:
            assert not intersects(a.range, b.range)


def test_style_budgets():
    assert style_budgets(2000, 0).global_cap == 3
    assert style_budgets(2000, 100).global_cap == 6
    assert style_budgets(2500, 10).global_cap == 3
    assert style_budgets(10, 0).per_paragraph_with_correctness == 1


def test_local_wins_overlap_with_model_candidate():
    text = "Hello  world."
    local = _s(5, 7, " ", category=Category.SPACING, source=Source.LOCAL)
    ai = _s(4, 8, "o w", category=Category.SPACING, confidence=0.99)
    stats: dict[str, int] = {}

    out = reconcile([ai, local], text, segmenter=SEG, stats_out=stats)

    assert out == [local]
    assert stats["policy_dropped_overlap"] == 1


def test_insertions_at_the_same_offset_conflict():
    text = "Hello world"
    local = _s(11, 11, ".", category=Category.PUNCTUATION, source=Source.LOCAL)
    ai = _s(11, 11, "!", category=Category.PUNCTUATION, confidence=0.9)
    stats: dict[str, int] = {}

    out = reconcile([ai, local], text, segmenter=SEG, stats_out=stats)

    assert out == [local]
    assert stats["policy_dropped_overlap"] == 1


def test_confidence_gates_depend_on_category():
    text = "x" * 60
    out = reconcile(
        [
            _s(0, 1, "y", category=Category.OTHER, confidence=0.65),
            _s(10, 11, "y", category=Category.SPELLING, confidence=0.6),
            _s(20, 21, "y", category=Category.SPELLING, confidence=0.5),
            _s(30, 31, "y", category=Category.SPELLING),
        ],
        text,
        segmenter=SEG,
    )
    assert [s.start for s in out] == [10, 30]


def test_disabled_categories_and_quotas():
    text = "x" * 60
    policy = PolicyConfig(disabled_categories=frozenset({"spelling"}))
    stats: dict[str, int] = {}
    out = reconcile(
        [
            _s(0, 1, "y", category=Category.SPELLING),
            _s(10, 11, "y", confidence=0.9),
            _s(20, 21, "y", confidence=0.9),
            _s(30, 31, "y", confidence=0.9),
        ],
        text,
        policy,
        segmenter=SEG,
        stats_out=stats,
    )
    assert [s.start for s in out] == [10, 20]
    assert stats["policy_dropped_category"] == 1
    assert stats["policy_dropped_quota"] == 1


def test_near_duplicates_collapse():
    text = "word " * 10
    comma = dict(category=Category.PUNCTUATION, original="", title="Comma")
    stats: dict[str, int] = {}
    out = reconcile(
        [_s(10, 10, ",", **comma), _s(14, 14, ",", **comma), _s(30, 30, ",", **comma)],
        text,
        segmenter=SEG,
        stats_out=stats,
    )
    assert [s.start for s in out] == [10, 30]
    assert stats["policy_dropped_near_duplicate"] == 1


def test_spacing_that_adds_letters_is_dropped():
    text = "word word"
    stats: dict[str, int] = {}
    out = reconcile([_s(4, 5, " a", category=Category.SPACING, original=" ")], text, segmenter=SEG, stats_out=stats)
    assert out == []
    assert stats["policy_dropped_spacing_letters"] == 1


def test_sanitize_swaps_inverted_and_drops_out_of_bounds():
    text = "Hello world."
    stats: dict[str, int] = {}
    out = reconcile([_s(7, 5, "x"), _s(8, 40, "x")], text, segmenter=SEG, stats_out=stats)
    assert [s.range for s in out] == [Range(5, 7)]
    assert stats["policy_dropped_bounds"] == 1


def test_style_budget_caps_style_without_correctness_signal():
    text = "word " * 400
    candidates = [
        _s(i * 10, i * 10 + 1, "W", category=Category.STYLE, confidence=0.9, diff_kind=DiffKind.CASE, original="w")
        for i in range(50)
    ]
    stats: dict[str, int] = {}

    out = reconcile(candidates, text, segmenter=SEG, stats_out=stats)

    assert len(out) <= 3
    assert stats["style_global_budget"] == 3
    assert stats["style_dropped_budget"] == 47
    assert all(s.changed_tokens == 1 for s in out)


def test_paragraph_density_limits_style_next_to_correctness_edits():
    text = "This has a speling error and bad style here.\n\nOther paragraph is here."
    spelling = _s(11, 18, "spelling", category=Category.SPELLING, confidence=0.9, original="speling")
    style = dict(category=Category.STYLE, confidence=0.9, diff_kind=DiffKind.CASE)
    first = _s(29, 32, "Bad", original="bad", **style)
    second = _s(33, 38, "Style", original="style", **style)
    other_para = _s(52, 61, "Paragraph", original="paragraph", **style)
    stats: dict[str, int] = {}

    out = reconcile([spelling, first, second, other_para], text, segmenter=SEG, stats_out=stats)

    assert [s.start for s in out] == [11, 29, 52]
    assert stats["style_dropped_density"] == 1
    _assert_clean(out)


def test_style_minimality_rejects_rewrites_and_mid_word_punctuation():
    text = "The quick brown fox jumps over the lazy dog."
    style = dict(category=Category.STYLE, confidence=0.9)
    rewrite = _s(4, 19, "fast red cat", diff_kind=DiffKind.WORDING, original="quick brown fox", **style)
    grows = _s(4, 9, "quickly", diff_kind=DiffKind.WORDING, original="quick", **style)
    mid_word = _s(2, 2, ",", diff_kind=DiffKind.PUNCTUATION, original="", **style)

    assert style_minimality(rewrite, text, segmenter=SEG).reason == "ratio"
    assert style_minimality(grows, text, segmenter=SEG).reason == "adds_letters"
    assert style_minimality(mid_word, text, segmenter=SEG).reason == "boundary"

    stats: dict[str, int] = {}
    assert reconcile([rewrite, mid_word], text, segmenter=SEG, stats_out=stats) == []
    assert stats["style_dropped_minimality"] == 1
    assert stats["style_dropped_boundary"] == 1


def test_style_confidence_threshold_is_stricter():
    text = "the cat sat."
    stats: dict[str, int] = {}
    out = reconcile(
        [_s(0, 1, "T", category=Category.STYLE, confidence=0.7, diff_kind=DiffKind.CASE, original="t")],
        text,
        segmenter=SEG,
        stats_out=stats,
    )
    assert out == []
    assert stats["style_dropped_confidence"] == 1


def test_output_is_non_overlapping_and_sorted():
    text = "Alpha beta gamma delta epsilon zeta eta theta."
    candidates = [
        _s(20, 25, "x", category=Category.SPELLING, confidence=0.9),
        _s(0, 5, "x", category=Category.SPELLING, confidence=0.9),
        _s(3, 8, "y", category=Category.SPACING, source=Source.LOCAL),
        _s(22, 30, "z", category=Category.PUNCTUATION, confidence=0.9),
        _s(40, 41, "q", category=Category.PUNCTUATION, confidence=0.9),
    ]
    out = reconcile(candidates, text, segmenter=SEG)
    _assert_clean(out)
    assert out[0].source is Source.LOCAL
    assert [s.start for s in out] == [3, 20, 40]
