from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from .cache import ResponseCache
from .config import LLM_PROVIDERS, SEGMENTATION_ENGINES, EngineConfig, load_config
from .editing import apply_all
from .errors import InputValidationError, UpstreamError
from .local_rules import analyze
from .logging_utils import setup_logging
from .models import Range, Suggestion
from .pipeline import suggest_text


def _parse_scope(value: str) -> Range:
    try:
        start_raw, end_raw = value.split(":", 1)
        return Range(int(start_raw or 0), int(end_raw) if end_raw else 10**12)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid scope {value!r}; expected START:END") from e


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="squiggle", description="Position-exact writing suggestions for prose.")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("suggest", help="Run local rules and the model, print reconciled suggestions as JSON.")
    s.add_argument("--input", "-i", required=True, help="Path to the text/Markdown file ('-' for stdin)")
    s.add_argument("--output", "-o", default=None, help="Write JSON here instead of stdout.")
    s.add_argument("--config", "-c", default=None, help="Path to YAML config")
    s.add_argument("--scope", type=_parse_scope, default=None, help="Analyse only START:END of the text.")
    s.add_argument("--provider", choices=sorted(LLM_PROVIDERS), default=None, help="Override llm.provider.")
    s.add_argument("--model", default=None, help="Override llm.model.")
    s.add_argument("--concurrency", type=int, default=None, help="Override engine.concurrency.")
    s.add_argument("--locale", default=None, help="Override engine.locale (e.g. en, de).")
    s.add_argument(
        "--segmentation-engine",
        choices=sorted(SEGMENTATION_ENGINES),
        default=None,
        help="Override engine.segmentation_engine.",
    )
    s.add_argument("--trace", default=None, help="Override JSONL trace path.")
    s.add_argument("--log", default=None, help="Override log path.")
    s.add_argument("--progress", action="store_true", help="Show a progress bar over chunk batches.")
    s.add_argument("--verbose", "-v", action="store_true", help="Debug logging.")

    lo = sub.add_parser("local", help="Run the deterministic local rules only.")
    lo.add_argument("--input", "-i", required=True, help="Path to the text file ('-' for stdin)")
    lo.add_argument("--output", "-o", default=None, help="Write JSON here instead of stdout.")

    a = sub.add_parser("apply", help="Apply suggestions from a JSON file to a text file.")
    a.add_argument("--input", "-i", required=True, help="Path to the text file")
    a.add_argument("--suggestions", "-s", required=True, help="JSON produced by 'suggest' or 'local'")
    a.add_argument("--output", "-o", default=None, help="Write the edited text here instead of stdout.")
    return p


def _read_text(path_value: str) -> str:
    if path_value == "-":
        return sys.stdin.read()
    return Path(path_value).read_text(encoding="utf-8")


def _write_output(path_value: str | None, content: str) -> None:
    if path_value is None:
        sys.stdout.write(content)
        if not content.endswith("\n"):
            sys.stdout.write("\n")
        return
    out = Path(path_value)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(content, encoding="utf-8")


def _load_suggestions(path_value: str) -> list[Suggestion]:
    payload: Any = json.loads(Path(path_value).read_text(encoding="utf-8"))
    items = payload.get("suggestions", []) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise ValueError(f"{path_value}: expected a list of suggestions")
    return [Suggestion.from_dict(item) for item in items if isinstance(item, dict)]


def _apply_overrides(cfg: EngineConfig, args: argparse.Namespace) -> EngineConfig:
    if args.provider is not None:
        llm_cfg = cfg.llm.__class__(**{**cfg.llm.__dict__, "provider": str(args.provider)})
        cfg = cfg.__class__(**{**cfg.__dict__, "llm": llm_cfg})
    if args.model is not None:
        llm_cfg = cfg.llm.__class__(**{**cfg.llm.__dict__, "model": str(args.model)})
        cfg = cfg.__class__(**{**cfg.__dict__, "llm": llm_cfg})
    if args.concurrency is not None:
        engine_cfg = cfg.engine.__class__(**{**cfg.engine.__dict__, "concurrency": max(1, int(args.concurrency))})
        cfg = cfg.__class__(**{**cfg.__dict__, "engine": engine_cfg})
    if args.locale is not None:
        engine_cfg = cfg.engine.__class__(**{**cfg.engine.__dict__, "locale": str(args.locale)})
        cfg = cfg.__class__(**{**cfg.__dict__, "engine": engine_cfg})
    if args.segmentation_engine is not None:
        engine_cfg = cfg.engine.__class__(
            **{**cfg.engine.__dict__, "segmentation_engine": str(args.segmentation_engine)}
        )
        cfg = cfg.__class__(**{**cfg.__dict__, "engine": engine_cfg})
    if args.trace is not None:
        cfg = cfg.__class__(**{**cfg.__dict__, "trace_path": str(args.trace)})
    if args.log is not None:
        cfg = cfg.__class__(**{**cfg.__dict__, "log_path": str(args.log)})
    return cfg


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "suggest":
        cfg = load_config(args.config) if args.config else EngineConfig()
        cfg = _apply_overrides(cfg, args)
        logger = setup_logging(Path(cfg.log_path) if cfg.log_path else None, verbose=bool(args.verbose))
        cache = ResponseCache(cfg.cache.max_entries, cfg.cache.ttl_s)
        try:
            result = suggest_text(
                _read_text(args.input),
                cfg=cfg,
                cache=cache,
                scope=args.scope,
                logger=logger,
                progress=bool(args.progress),
            )
        except InputValidationError as e:
            print(f"Invalid input ({e.reason}): {e}", file=sys.stderr)
            return 2
        except UpstreamError as e:
            print(f"Upstream error: {e}", file=sys.stderr)
            return 3
        if result.partial:
            logger.warning("Partial result: %d chunk(s) failed", result.stats.get("chunks_failed", 0))
        _write_output(args.output, json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return 0

    if args.cmd == "local":
        text = _read_text(args.input)
        payload = {"suggestions": [s.to_dict() for s in analyze(text)]}
        _write_output(args.output, json.dumps(payload, ensure_ascii=False, indent=2))
        return 0

    if args.cmd == "apply":
        text = _read_text(args.input)
        suggestions = _load_suggestions(args.suggestions)
        pending = [s for s in suggestions if not s.applied]
        edited = apply_all(text, pending)
        if args.output is None:
            sys.stdout.write(edited)
        else:
            _write_output(args.output, edited)
        print(f"Applied suggestions: {len(pending)}/{len(suggestions)}", file=sys.stderr)
        return 0

    print(f"Unknown command: {args.cmd}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
