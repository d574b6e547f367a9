from __future__ import annotations

import json

import pytest

from squiggle.cache import sha256_hex
from squiggle.models import Category, Chunk, DiffKind, DropReason, Range, Severity, Source, Suggestion
from squiggle.normalize import (
    extract_json_payload,
    markup_drop_reason,
    normalize_candidate,
    normalize_chunk_response,
    parse_model_suggestions,
    sanity_ok,
)
from squiggle.segmentation import Segmenter

SEG = Segmenter(engine="heuristic")


def _item(start: int, end: int, **extra):  # noqa: ANN003, ANN202
    payload = {
        "title": "Spelling",
        "category": "spelling",
        "severity": "warn",
        "range": {"start": start, "end": end},
        "replacement": "receive",
    }
    payload.update(extra)
    return payload


def test_extract_json_payload_accepts_fenced_and_wrapped_json():
    assert extract_json_payload('{"suggestions": []}') == {"suggestions": []}
    assert extract_json_payload('```json\n{"suggestions": [1]}\n```') == {"suggestions": [1]}
    assert extract_json_payload('Sure! {"suggestions": [2]} Hope it helps.') == {"suggestions": [2]}
    with pytest.raises(ValueError):
        extract_json_payload("no json here")
    with pytest.raises(ValueError):
        extract_json_payload("   ")


def test_parse_model_suggestions_accepts_bare_list():
    assert parse_model_suggestions("[{}]") == [{}]
    with pytest.raises(ValueError):
        parse_model_suggestions('{"suggestions": "nope"}')


def test_normalize_candidate_translates_chunk_offsets():
    text = "x" * 100 + "I recieve mail." + "y" * 40
    chunk = Chunk(start=100, end=115, content=text[90:115], prefix_len=10)
    s = normalize_candidate(_item(12, 19), chunk, text, chunk_index=3, item_index=1)

    assert s is not None
    assert s.range == Range(102, 109)
    assert s.original == "recieve"
    assert s.checksum == sha256_hex("recieve")
    assert s.id == "ai-3-1"
    assert s.source is Source.AI


def test_normalize_candidate_drops_prefix_and_malformed_items():
    text = "abcdefghij" * 3
    chunk = Chunk(start=10, end=30, content=text[0:30], prefix_len=10)
    stats: dict[str, int] = {}

    assert normalize_candidate(_item(5, 8), chunk, text, stats_out=stats) is None
    assert normalize_candidate({"title": "x"}, chunk, text, stats_out=stats) is None
    assert normalize_candidate(_item(True, 12), chunk, text, stats_out=stats) is None
    bad = _item(11, 12)
    bad["range"] = {"start": "11", "end": 12}
    assert normalize_candidate(bad, chunk, text, stats_out=stats) is None
    assert normalize_candidate(["not", "a", "dict"], chunk, text, stats_out=stats) is None

    assert stats == {"dropped_prefix": 1, "dropped_malformed": 4}


def test_normalize_candidate_coerces_enums_and_clamps():
    text = "Hello world."
    chunk = Chunk(start=0, end=len(text), content=text)
    s = normalize_candidate(
        _item(6, 10_000, category="grammar", severity="fatal", diffKind="rewrite", confidence=1.5),
        chunk,
        text,
    )
    assert s is not None
    assert s.range == Range(6, len(text))
    assert s.category is Category.OTHER
    assert s.severity is Severity.INFO
    assert s.diff_kind is DiffKind.UNSPECIFIED
    assert s.confidence is None

    s = normalize_candidate(_item(0, 5, confidence="0.9"), chunk, text)
    assert s is not None and s.confidence is None
    s = normalize_candidate(_item(0, 5, confidence=0.9), chunk, text)
    assert s is not None and s.confidence == 0.9


def test_markup_drop_reason():
    forbidden = [Range(10, 20)]
    prose = [Range(0, 30)]
    assert markup_drop_reason(Range(15, 16), forbidden, prose) is DropReason.FORBIDDEN
    assert markup_drop_reason(Range(25, 35), forbidden, prose) is DropReason.OUTSIDE_PROSE
    assert markup_drop_reason(Range(2, 4), forbidden, prose) is None
    assert markup_drop_reason(Range(25, 35), forbidden, None) is None


def _suggestion(start: int, end: int, replacement: str, category: Category, original: str | None = None) -> Suggestion:
    return Suggestion(
        id="t",
        title="t",
        category=category,
        severity=Severity.INFO,
        range=Range(start, end),
        replacement=replacement,
        source=Source.AI,
        original=original,
    )


def test_sanity_guard():
    text = "Hello,world."
    assert sanity_ok(_suggestion(5, 7, ", w", Category.SPACING), text)
    assert not sanity_ok(_suggestion(5, 6, " a", Category.SPACING), text)
    assert not sanity_ok(_suggestion(0, 2, "x" * 401, Category.OTHER), text)
    # "?" jammed between two letters.
    assert not sanity_ok(_suggestion(3, 3, "?", Category.STYLE), text)
    assert sanity_ok(_suggestion(3, 3, "?", Category.PUNCTUATION), text)
    assert not sanity_ok(_suggestion(10, 20, "", Category.OTHER), text)


def test_normalize_chunk_response_relocates_and_counts():
    text = "Intro.\n\nI recieve mail. More `code  here`."
    response = json.dumps(
        {
            "suggestions": [
                # Offsets are off by two; the declared original is still found.
                _item(12, 19, original="recieve", before="I ", after=" mail"),
                _item(34, 36, title="Spacing", category="spacing", replacement=" ", original="  "),
                _item(0, 3, original="zzz"),
                {"range": {"start": 1}},
            ]
        }
    )
    chunk = Chunk(start=0, end=len(text), content=text)
    stats: dict[str, int] = {}
    out = normalize_chunk_response(
        response,
        chunk,
        text,
        chunk_index=0,
        forbidden=[Range(29, 41)],
        prose=[Range(0, 6), Range(8, len(text))],
        segmenter=SEG,
        stats_out=stats,
    )

    assert [(s.range, s.replacement) for s in out] == [(Range(10, 17), "receive")]
    assert text[10:17] == "recieve"
    assert stats["candidates_parsed"] == 4
    assert stats["dropped_malformed"] == 1
    assert stats["dropped_forbidden"] == 1
    assert stats["dropped_relocation_failed"] == 1
    assert stats["candidates_kept"] == 1


def test_normalize_chunk_response_counts_unparseable():
    stats: dict[str, int] = {}
    chunk = Chunk(start=0, end=5, content="Hello")
    assert normalize_chunk_response("garbage", chunk, "Hello", chunk_index=0, stats_out=stats) == []
    assert stats == {"responses_unparseable": 1}


def test_normalize_chunk_response_shifts_scoped_slice_into_full_text():
    full = "Preface here.\n\nI recieve mail."
    offset = full.index("I recieve")
    slice_text = full[offset:]
    chunk = Chunk(start=0, end=len(slice_text), content=slice_text)
    response = json.dumps({"suggestions": [_item(2, 9, original="recieve")]})

    out = normalize_chunk_response(
        response, chunk, slice_text, chunk_index=0, full_text=full, offset=offset, segmenter=SEG
    )
    assert len(out) == 1
    assert full[out[0].start : out[0].end] == "recieve"


def test_relocation_into_inline_code_is_dropped():
    text = "The `teh` value is teh best."
    response = json.dumps({"suggestions": [_item(9, 12, original="teh", replacement="the")]})
    chunk = Chunk(start=0, end=len(text), content=text)
    stats: dict[str, int] = {}

    out = normalize_chunk_response(
        response,
        chunk,
        text,
        chunk_index=0,
        forbidden=[Range(4, 9)],
        segmenter=SEG,
        stats_out=stats,
    )

    assert out == []
    assert stats["dropped_forbidden"] == 1
    assert stats["candidates_kept"] == 0
