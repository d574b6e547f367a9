from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .models import Category, DiffKind
from .segmentation import SEGMENTATION_ENGINES

LLM_PROVIDERS = {"mock", "openai", "gemini", "ollama"}
_CATEGORY_NAMES = {c.value for c in Category}
_DIFF_KIND_NAMES = {k.value for k in DiffKind if k is not DiffKind.UNSPECIFIED}


@dataclass(frozen=True)
class LLMConfig:
    provider: str = "mock"  # 'mock' | 'openai' | 'gemini' | 'ollama'
    model: str = "gemini-2.0-flash"
    base_url: str | None = None
    temperature: float = 0.2
    max_output_tokens: int = 4096
    timeout_s: float = 60.0
    retries: int = 1
    # Name of the env var holding the API key; each provider has its own default.
    api_key_env: str | None = None


@dataclass(frozen=True)
class EngineSettings:
    max_text_chars: int = 100_000
    # Texts up to this length go to the model as a single chunk.
    singleshot_max_chars: int = 4500
    chunk_target_chars: int = 3000
    chunk_overlap_chars: int = 250
    # Width of each concurrent batch of chunk requests.
    concurrency: int = 4
    locale: str = "en"
    segmentation_engine: str = "auto"  # 'auto' | 'punkt' | 'heuristic'


def _default_quotas() -> dict[str, int]:
    return {"style": 9999, "other": 2}


def _default_always_allowed() -> frozenset[str]:
    return frozenset({"whitespace", "punctuation", "case"})


@dataclass(frozen=True)
class PolicyConfig:
    base_min_confidence: float = 0.55
    min_confidence_other: float = 0.7
    min_confidence_style: float = 0.75
    # Same content within this many characters of an accepted edit is a duplicate.
    near_duplicate_chars: int = 8
    category_quotas: Mapping[str, int] = field(default_factory=_default_quotas)
    disabled_categories: frozenset[str] = frozenset()
    # Style edits: changed tokens vs. containing-sentence tokens.
    max_token_change_ratio: float = 0.06
    style_per_1k_base: int = 3
    style_ratio_of_correctness: float = 0.15
    style_floor: int = 3
    paragraph_style_cap: int = 1
    diff_kinds_always_allowed: frozenset[str] = field(default_factory=_default_always_allowed)
    max_replacement_chars: int = 400

    def quota_for(self, category: Category) -> int | None:
        """Cap for ``category``; ``0`` when disabled, ``None`` when unbounded."""
        if category.value in self.disabled_categories:
            return 0
        quota = self.category_quotas.get(category.value)
        return None if quota is None else max(0, int(quota))

    def min_confidence_for(self, category: Category) -> float:
        if category is Category.OTHER:
            return self.min_confidence_other
        return self.base_min_confidence


@dataclass(frozen=True)
class CacheConfig:
    max_entries: int = 200
    ttl_s: float = 120.0


@dataclass(frozen=True)
class EngineConfig:
    llm: LLMConfig = LLMConfig()
    engine: EngineSettings = EngineSettings()
    policy: PolicyConfig = PolicyConfig()
    cache: CacheConfig = CacheConfig()
    log_path: str | None = None
    # Optional JSONL event trace, one object per request stage.
    trace_path: str | None = None


def _resolve_optional_path(base_dir: Path, value: Any) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    path = Path(raw)
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return str(path)


def _normalize_choice(value: Any, *, field_name: str, allowed: set[str], default: str) -> str:
    raw = str(default if value is None else value).strip().lower()
    if raw not in allowed:
        allowed_list = ", ".join(sorted(allowed))
        raise ValueError(f"Invalid value for {field_name}: {raw!r}. Allowed: {allowed_list}")
    return raw


def _normalize_choices(values: Any, *, field_name: str, allowed: set[str]) -> frozenset[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    return frozenset(
        _normalize_choice(v, field_name=field_name, allowed=allowed, default="") for v in values
    )


def _load_policy(policy_data: dict[str, Any]) -> PolicyConfig:
    quotas = _default_quotas()
    for name, cap in (policy_data.get("category_quotas", {}) or {}).items():
        key = _normalize_choice(name, field_name="policy.category_quotas", allowed=_CATEGORY_NAMES, default="")
        quotas[key] = int(cap)

    always_allowed = (
        _normalize_choices(
            policy_data["diff_kinds_always_allowed"],
            field_name="policy.diff_kinds_always_allowed",
            allowed=_DIFF_KIND_NAMES,
        )
        if "diff_kinds_always_allowed" in policy_data
        else _default_always_allowed()
    )
    return PolicyConfig(
        base_min_confidence=float(policy_data.get("base_min_confidence", 0.55)),
        min_confidence_other=float(policy_data.get("min_confidence_other", 0.7)),
        min_confidence_style=float(policy_data.get("min_confidence_style", 0.75)),
        near_duplicate_chars=max(0, int(policy_data.get("near_duplicate_chars", 8))),
        category_quotas=quotas,
        disabled_categories=_normalize_choices(
            policy_data.get("disabled_categories"),
            field_name="policy.disabled_categories",
            allowed=_CATEGORY_NAMES,
        ),
        max_token_change_ratio=float(policy_data.get("max_token_change_ratio", 0.06)),
        style_per_1k_base=max(0, int(policy_data.get("style_per_1k_base", 3))),
        style_ratio_of_correctness=float(policy_data.get("style_ratio_of_correctness", 0.15)),
        style_floor=max(0, int(policy_data.get("style_floor", 3))),
        paragraph_style_cap=max(0, int(policy_data.get("paragraph_style_cap", 1))),
        diff_kinds_always_allowed=always_allowed,
        max_replacement_chars=max(0, int(policy_data.get("max_replacement_chars", 400))),
    )


def load_config(path: str | Path) -> EngineConfig:
    cfg_path = Path(path)
    data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}

    llm_data = data.get("llm", {}) or {}
    engine_data = data.get("engine", {}) or {}
    policy_data = data.get("policy", {}) or {}
    cache_data = data.get("cache", {}) or {}

    llm = LLMConfig(
        provider=_normalize_choice(
            llm_data.get("provider", "mock"),
            field_name="llm.provider",
            allowed=LLM_PROVIDERS,
            default="mock",
        ),
        model=str(llm_data.get("model", "gemini-2.0-flash")),
        base_url=(str(llm_data["base_url"]) if llm_data.get("base_url") is not None else None),
        temperature=float(llm_data.get("temperature", 0.2)),
        max_output_tokens=int(llm_data.get("max_output_tokens", 4096)),
        timeout_s=float(llm_data.get("timeout_s", 60.0)),
        retries=max(0, int(llm_data.get("retries", 1))),
        api_key_env=(
            str(llm_data["api_key_env"]).strip()
            if llm_data.get("api_key_env") is not None and str(llm_data["api_key_env"]).strip()
            else None
        ),
    )
    engine = EngineSettings(
        max_text_chars=int(engine_data.get("max_text_chars", 100_000)),
        singleshot_max_chars=int(engine_data.get("singleshot_max_chars", 4500)),
        chunk_target_chars=max(1, int(engine_data.get("chunk_target_chars", 3000))),
        chunk_overlap_chars=max(0, int(engine_data.get("chunk_overlap_chars", 250))),
        concurrency=max(1, int(engine_data.get("concurrency", 4))),
        locale=str(engine_data.get("locale", "en")),
        segmentation_engine=_normalize_choice(
            engine_data.get("segmentation_engine", "auto"),
            field_name="engine.segmentation_engine",
            allowed=SEGMENTATION_ENGINES,
            default="auto",
        ),
    )
    cache = CacheConfig(
        max_entries=max(1, int(cache_data.get("max_entries", 200))),
        ttl_s=float(cache_data.get("ttl_s", 120.0)),
    )

    return EngineConfig(
        llm=llm,
        engine=engine,
        policy=_load_policy(policy_data),
        cache=cache,
        log_path=_resolve_optional_path(cfg_path.parent, data.get("log_path")),
        trace_path=_resolve_optional_path(cfg_path.parent, data.get("trace_path")),
    )
