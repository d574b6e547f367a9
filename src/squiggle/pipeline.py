from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tqdm import tqdm

from .cache import ResponseCache, cache_key
from .chunking import pack_chunks
from .config import EngineConfig
from .errors import InputValidationError, RequestCancelledError, UpstreamError
from .llm import PROMPT_VERSION, SuggestClient, build_chunk_prompt, build_suggest_client
from .local_rules import analyze
from .markup import RangeProvider, forbidden_ranges, prose_ranges
from .models import Chunk, Range, Suggestion, SuggestResult
from .normalize import markup_drop_reason, normalize_chunk_response
from .policy import reconcile
from .ranges import clamp_int, merge
from .segmentation import Segmenter


class CancelToken:
    """Single cancellation signal shared by every chunk request of one run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class SessionRegistry:
    """At most one in-flight request per session: starting a new one cancels the previous."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, CancelToken] = {}

    def begin(self, session_id: str) -> CancelToken:
        token = CancelToken()
        with self._lock:
            previous = self._tokens.get(session_id)
            if previous is not None:
                previous.cancel()
            self._tokens[session_id] = token
        return token

    def finish(self, session_id: str, token: CancelToken) -> None:
        with self._lock:
            if self._tokens.get(session_id) is token:
                del self._tokens[session_id]

    def active(self, session_id: str) -> CancelToken | None:
        with self._lock:
            return self._tokens.get(session_id)


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _append_jsonl(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(payload, ensure_ascii=False))
        f.write("\n")


def _copy_shifted(items: list[Suggestion], delta: int) -> list[Suggestion]:
    return [replace(s, range=s.range.shift(delta)) for s in items]


def _validate_text(text: Any, max_chars: int) -> str:
    if not isinstance(text, str) or not text:
        raise InputValidationError("missing_text", "Missing text")
    if len(text) > max_chars:
        raise InputValidationError("text_too_large", f"Text too large: {len(text)} > {max_chars} chars")
    return text


def _request_chunk(
    client: SuggestClient,
    chunk: Chunk,
    idx: int,
    *,
    retries: int,
    token: CancelToken,
    trace_id: str,
    emit_trace: Callable[..., None],
    logger: logging.Logger,
    counters: dict[str, int],
    counters_lock: threading.Lock,
) -> str:
    retry_attempts = max(1, retries + 1)
    prompt = build_chunk_prompt(chunk.content, chunk.prefix_len)
    context = {"task": "suggest", "chunk_index": idx, "prefix_len": chunk.prefix_len, "trace_id": trace_id}
    last_exc: Exception | None = None
    for attempt in range(1, retry_attempts + 1):
        if token.cancelled:
            raise RequestCancelledError("Request cancelled")
        with counters_lock:
            counters["requests_total"] += 1
        logger.debug("Suggest request chunk=%d attempt %d/%d chars=%d", idx, attempt, retry_attempts, len(chunk.content))
        emit_trace("request", chunk=idx, attempt=attempt, chars=len(chunk.content), prefix_len=chunk.prefix_len)
        try:
            raw = client.suggest(prompt, context)
        except Exception as exc:
            last_exc = exc
            with counters_lock:
                counters["requests_failed"] += 1
            logger.warning("Suggest request chunk=%d attempt %d/%d failed: %s", idx, attempt, retry_attempts, exc)
            emit_trace("error", chunk=idx, attempt=attempt, will_retry=attempt < retry_attempts, error=str(exc))
            continue
        emit_trace("response", chunk=idx, attempt=attempt, chars=len(raw or ""))
        return raw
    if last_exc is None:
        raise RuntimeError(f"Chunk {idx} made no request attempts")
    raise last_exc


def suggest_text(
    text: str,
    *,
    cfg: EngineConfig | None = None,
    client: SuggestClient | None = None,
    cache: ResponseCache | None = None,
    scope: Range | None = None,
    session_id: str | None = None,
    registry: SessionRegistry | None = None,
    cancel_token: CancelToken | None = None,
    forbidden_fn: RangeProvider = forbidden_ranges,
    prose_fn: RangeProvider = prose_ranges,
    logger: logging.Logger | None = None,
    progress: bool = False,
    stats_out: dict[str, Any] | None = None,
) -> SuggestResult:
    """Run the full suggestion engine over ``text`` (or the ``scope`` slice of it).

    Local rules and model chunks are merged, relocated against ``text`` and passed through
    the policy pipeline.  Returned ranges are absolute into ``text``.  Raises
    ``InputValidationError`` for missing or oversized text and ``UpstreamError`` when every
    model chunk failed; a partial failure only sets ``SuggestResult.partial``.
    """
    cfg = cfg or EngineConfig()
    logger = logger or logging.getLogger("squiggle")
    text = _validate_text(text, cfg.engine.max_text_chars)
    n = len(text)
    trace_id = uuid.uuid4().hex[:10]
    trace_path = Path(cfg.trace_path) if cfg.trace_path else None
    trace_lock = threading.Lock()
    stats: dict[str, Any] = {"trace_id": trace_id, "text_chars": n}

    def _emit_trace(event: str, **fields: Any) -> None:
        if trace_path is None:
            return
        payload = {"timestamp": _utc_now_iso(), "trace_id": trace_id, "event": event, **fields}
        try:
            with trace_lock:
                _append_jsonl(trace_path, payload)
        except Exception:
            logger.debug("Failed to append suggest trace event", exc_info=True)

    def _finish(result: SuggestResult) -> SuggestResult:
        if stats_out is not None:
            stats_out.update(result.stats)
        return result

    base_start = clamp_int(scope.start if scope is not None else 0, 0, n)
    base_end = clamp_int(scope.end if scope is not None else n, 0, n)
    use_slice = base_end > base_start and base_end - base_start < n
    if not use_slice:
        base_start, base_end = 0, n
    slice_text = text[base_start:base_end]
    stats["scope"] = {"start": base_start, "end": base_end}
    _emit_trace("start", text_chars=n, scope_start=base_start, scope_end=base_end, model=cfg.llm.model)

    key = cache_key(
        slice_text,
        base_start,
        base_end,
        prompt_version=PROMPT_VERSION,
        model=cfg.llm.model,
        singleshot_max=cfg.engine.singleshot_max_chars,
    )
    # A new request supersedes the session's previous one even when it is served from cache.
    if registry is not None and session_id is not None:
        token = registry.begin(session_id)
    else:
        token = cancel_token or CancelToken()

    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            if registry is not None and session_id is not None:
                registry.finish(session_id, token)
            stats["cache_hit"] = True
            stats["suggestions"] = len(cached)
            logger.info("Suggest cache hit (%s): suggestions=%d", trace_id, len(cached))
            _emit_trace("cache_hit", suggestions=len(cached))
            return _finish(
                SuggestResult(
                    suggestions=_copy_shifted(cached, base_start),
                    trace_id=trace_id,
                    cache_hit=True,
                    stats=stats,
                )
            )
    stats["cache_hit"] = False

    if client is None:
        client = build_suggest_client(
            cfg.llm.provider,
            cfg.llm.model,
            cfg.llm.temperature,
            cfg.llm.timeout_s,
            cfg.llm.max_output_tokens,
            base_url=cfg.llm.base_url,
            api_key_env=cfg.llm.api_key_env,
        )

    try:
        segmenter = Segmenter(locale=cfg.engine.locale, engine=cfg.engine.segmentation_engine)
        forbidden = merge(forbidden_fn(slice_text))
        prose = merge(prose_fn(slice_text))
        stats["forbidden_ranges"] = len(forbidden)
        stats["prose_ranges"] = len(prose)

        local: list[Suggestion] = []
        for s in analyze(slice_text):
            reason = markup_drop_reason(s.range, forbidden, prose)
            if reason is not None:
                stats[f"local_dropped_{reason.value}"] = stats.get(f"local_dropped_{reason.value}", 0) + 1
                continue
            local.append(s.shifted(base_start))
        stats["local_candidates"] = len(local)

        chunks = pack_chunks(
            slice_text,
            prose,
            cfg.engine.chunk_target_chars,
            cfg.engine.chunk_overlap_chars,
            singleshot_max=cfg.engine.singleshot_max_chars,
            segmenter=segmenter,
        )
        stats["chunks_total"] = len(chunks)
        logger.debug("Suggest (%s): chunks=%d local=%d", trace_id, len(chunks), len(local))

        counters = {"requests_total": 0, "requests_failed": 0}
        counters_lock = threading.Lock()
        raw_by_chunk: dict[int, str] = {}
        chunk_errors: dict[int, str] = {}
        width = max(1, cfg.engine.concurrency)
        with ThreadPoolExecutor(max_workers=width) as ex, tqdm(
            total=len(chunks), desc="Suggest", unit="chunk", disable=not progress
        ) as bar:
            # Fixed-size batches: the next batch starts only after the current one resolves.
            for batch_start in range(0, len(chunks), width):
                batch = range(batch_start, min(len(chunks), batch_start + width))
                if token.cancelled:
                    for idx in batch:
                        chunk_errors[idx] = "cancelled"
                    bar.update(len(batch))
                    continue
                futures = {
                    ex.submit(
                        _request_chunk,
                        client,
                        chunks[idx],
                        idx,
                        retries=cfg.llm.retries,
                        token=token,
                        trace_id=trace_id,
                        emit_trace=_emit_trace,
                        logger=logger,
                        counters=counters,
                        counters_lock=counters_lock,
                    ): idx
                    for idx in batch
                }
                for fut in as_completed(futures):
                    idx = futures[fut]
                    try:
                        raw_by_chunk[idx] = fut.result()
                    except RequestCancelledError:
                        chunk_errors[idx] = "cancelled"
                    except Exception as exc:
                        chunk_errors[idx] = str(exc)
                    bar.update(1)
        stats.update(counters)
        stats["chunks_failed"] = len(chunk_errors)

        if chunks and len(chunk_errors) == len(chunks):
            errors = [chunk_errors[i] for i in sorted(chunk_errors)]
            _emit_trace("summary", failed=True, chunks_failed=len(chunk_errors), cancelled=token.cancelled)
            if token.cancelled:
                raise RequestCancelledError("Request cancelled", chunk_errors=errors)
            raise UpstreamError(f"All {len(chunks)} model chunk(s) failed", chunk_errors=errors)

        ai: list[Suggestion] = []
        for idx in sorted(raw_by_chunk):
            ai.extend(
                normalize_chunk_response(
                    raw_by_chunk[idx],
                    chunks[idx],
                    slice_text,
                    chunk_index=idx,
                    forbidden=forbidden,
                    prose=prose,
                    full_text=text,
                    offset=base_start,
                    segmenter=segmenter,
                    max_replacement_chars=cfg.policy.max_replacement_chars,
                    stats_out=stats,
                )
            )
        stats["ai_candidates"] = len(ai)

        suggestions = reconcile(local + ai, text, cfg.policy, segmenter=segmenter, stats_out=stats)
    finally:
        if registry is not None and session_id is not None:
            registry.finish(session_id, token)

    partial = bool(chunk_errors)
    stats["partial"] = partial
    stats["suggestions"] = len(suggestions)
    if cache is not None and not partial:
        cache.set(key, _copy_shifted(suggestions, -base_start))

    logger.info(
        "Suggest done (%s): local=%d ai=%d kept=%d chunks=%d failed=%d",
        trace_id,
        len(local),
        len(ai),
        len(suggestions),
        len(chunks),
        len(chunk_errors),
    )
    _emit_trace(
        "summary",
        suggestions=len(suggestions),
        partial=partial,
        chunks_total=len(chunks),
        chunks_failed=len(chunk_errors),
    )
    return _finish(
        SuggestResult(
            suggestions=suggestions,
            trace_id=trace_id,
            cache_hit=False,
            partial=partial,
            stats=stats,
        )
    )
