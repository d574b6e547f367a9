from __future__ import annotations

import json
import threading
from typing import Any

import pytest

from squiggle.cache import ResponseCache
from squiggle.config import EngineConfig, EngineSettings, LLMConfig
from squiggle.errors import InputValidationError, RequestCancelledError, UpstreamError
from squiggle.llm import MockSuggestClient
from squiggle.models import Range, Source
from squiggle.pipeline import CancelToken, SessionRegistry, suggest_text


def _cfg(**engine: Any) -> EngineConfig:
    settings = {"segmentation_engine": "heuristic", "concurrency": 2, **engine}
    return EngineConfig(llm=LLMConfig(provider="mock", retries=0), engine=EngineSettings(**settings))


def _response(*items: dict[str, Any]) -> str:
    return json.dumps({"suggestions": list(items)})


def _spelling(start: int, end: int, original: str, replacement: str) -> dict[str, Any]:
    return {
        "title": "Spelling",
        "category": "spelling",
        "severity": "warn",
        "range": {"start": start, "end": end},
        "original": original,
        "replacement": replacement,
        "confidence": 0.9,
    }


class _FailingClient:
    def __init__(self, fail_chunks: set[int] | None = None) -> None:
        self.fail_chunks = fail_chunks
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def suggest(self, prompt: str, context: dict[str, Any]) -> str:
        with self._lock:
            self.calls.append(dict(context))
        if self.fail_chunks is None or context["chunk_index"] in self.fail_chunks:
            raise RuntimeError(f"boom {context['chunk_index']}")
        return _response()


def test_suggest_merges_local_and_model_candidates():
    text = "Helo world.  This is fine."
    client = MockSuggestClient(responses=(_response(_spelling(0, 4, "Helo", "Hello")),))
    stats: dict[str, Any] = {}

    result = suggest_text(text, cfg=_cfg(), client=client, stats_out=stats)

    assert [(s.source, s.range, s.replacement) for s in result.suggestions] == [
        (Source.AI, Range(0, 4), "Hello"),
        (Source.LOCAL, Range(11, 13), " "),
    ]
    assert result.cache_hit is False
    assert result.partial is False
    assert len(client.calls) == 1
    assert "BLOCK START\nHelo world.  This is fine.\nBLOCK END" in client.calls[0]
    assert stats["chunks_total"] == 1
    assert stats["suggestions"] == 2


def test_default_mock_provider_runs_offline():
    result = suggest_text("hello there", cfg=_cfg())
    assert [s.replacement for s in result.suggestions] == ["H", "."]


def test_scope_results_are_absolute_and_cached_with_shift():
    text = "Intro line here.\n\nHelo world. This is fine."
    scope = Range(18, len(text))
    client = MockSuggestClient(responses=(_response(_spelling(0, 4, "Helo", "Hello")),))
    cache = ResponseCache()

    first = suggest_text(text, cfg=_cfg(), client=client, cache=cache, scope=scope)
    second = suggest_text(text, cfg=_cfg(), client=client, cache=cache, scope=scope)

    assert [s.range for s in first.suggestions] == [Range(18, 22)]
    assert text[18:22] == "Helo"
    assert second.cache_hit is True
    assert [s.range for s in second.suggestions] == [Range(18, 22)]
    assert len(client.calls) == 1
    # Hits hand out copies; flipping flags on a result never leaks into the cache.
    second.suggestions[0].applied = True
    third = suggest_text(text, cfg=_cfg(), client=client, cache=cache, scope=scope)
    assert third.suggestions[0].applied is False


def test_markup_is_never_edited():
    text = "Use `a  b` here and recieve it."
    client = MockSuggestClient(
        responses=(
            _response(
                {
                    "title": "Spacing",
                    "category": "spacing",
                    "severity": "info",
                    "range": {"start": 6, "end": 8},
                    "original": "  ",
                    "replacement": " ",
                },
            ),
        )
    )
    stats: dict[str, Any] = {}

    result = suggest_text(text, cfg=_cfg(), client=client, stats_out=stats)

    assert [(s.range, s.replacement) for s in result.suggestions] == [(Range(20, 27), "receive")]
    assert stats["local_dropped_forbidden"] == 1
    assert stats["dropped_forbidden"] == 1


def test_input_validation():
    with pytest.raises(InputValidationError) as exc:
        suggest_text("", cfg=_cfg())
    assert exc.value.reason == "missing_text"

    with pytest.raises(InputValidationError) as exc:
        suggest_text("x" * 11, cfg=_cfg(max_text_chars=10))
    assert exc.value.reason == "text_too_large"


def test_all_chunks_failing_raises_upstream_error():
    client = _FailingClient()
    with pytest.raises(UpstreamError) as exc:
        suggest_text("Hello world.", cfg=_cfg(), client=client)
    assert exc.value.chunk_errors == ["boom 0"]
    assert not isinstance(exc.value, RequestCancelledError)


def test_retries_before_giving_up():
    cfg = _cfg()
    cfg = cfg.__class__(**{**cfg.__dict__, "llm": LLMConfig(provider="mock", retries=2)})
    client = _FailingClient()
    with pytest.raises(UpstreamError):
        suggest_text("Hello world.", cfg=cfg, client=client)
    assert len(client.calls) == 3


def test_partial_failure_keeps_other_chunks_and_skips_cache():
    text = "First sentence here. Second sentence here."
    cfg = _cfg(singleshot_max_chars=20, chunk_target_chars=10, concurrency=1)
    client = _FailingClient(fail_chunks={1})
    cache = ResponseCache()
    stats: dict[str, Any] = {}

    result = suggest_text(text, cfg=cfg, client=client, cache=cache, stats_out=stats)

    assert result.partial is True
    assert stats["chunks_total"] == 2
    assert stats["chunks_failed"] == 1
    assert len(cache) == 0
    assert sorted(c["chunk_index"] for c in client.calls) == [0, 1]
    assert client.calls[1]["prefix_len"] == 21


def test_cancelled_request_raises():
    token = CancelToken()
    token.cancel()
    client = MockSuggestClient()
    with pytest.raises(RequestCancelledError):
        suggest_text("Hello world.", cfg=_cfg(), client=client, cancel_token=token)
    assert client.calls == []


def test_session_registry_supersedes_previous_request():
    registry = SessionRegistry()
    first = registry.begin("doc-1")
    second = registry.begin("doc-1")
    assert first.cancelled
    assert not second.cancelled
    assert registry.active("doc-1") is second

    registry.finish("doc-1", first)
    assert registry.active("doc-1") is second
    registry.finish("doc-1", second)
    assert registry.active("doc-1") is None


def test_suggest_with_session_cancels_stale_request_and_cleans_up():
    registry = SessionRegistry()
    stale = registry.begin("doc-1")

    suggest_text("Hello world.", cfg=_cfg(), client=MockSuggestClient(), session_id="doc-1", registry=registry)

    assert stale.cancelled
    assert registry.active("doc-1") is None


def test_cache_hit_still_supersedes_stale_session_request():
    cache = ResponseCache()
    suggest_text("Hello world.", cfg=_cfg(), client=MockSuggestClient(), cache=cache)
    registry = SessionRegistry()
    stale = registry.begin("doc-1")

    result = suggest_text(
        "Hello world.", cfg=_cfg(), client=MockSuggestClient(), cache=cache, session_id="doc-1", registry=registry
    )

    assert result.cache_hit
    assert stale.cancelled
    assert registry.active("doc-1") is None


def test_trace_file_records_request_lifecycle(tmp_path):
    trace = tmp_path / "trace" / "suggest.jsonl"
    cfg = _cfg()
    cfg = cfg.__class__(**{**cfg.__dict__, "trace_path": str(trace)})

    result = suggest_text("Hello world.", cfg=cfg, client=MockSuggestClient())

    events = [json.loads(line) for line in trace.read_text(encoding="utf-8").splitlines()]
    assert [e["event"] for e in events] == ["start", "request", "response", "summary"]
    assert all(e["trace_id"] == result.trace_id for e in events)
