from __future__ import annotations

import json
import os
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Protocol


class SuggestClient(Protocol):
    def suggest(self, prompt: str, context: dict[str, Any]) -> str: ...


PROMPT_VERSION = "v4"
MAX_ITEMS_PER_CHUNK = 30

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "suggestions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["title", "category", "severity", "range", "replacement"],
                "properties": {
                    "title": {"type": "string"},
                    "message": {"type": "string"},
                    "category": {
                        "type": "string",
                        "enum": ["spacing", "punctuation", "spelling", "style", "other"],
                    },
                    "severity": {"type": "string", "enum": ["info", "warn", "error"]},
                    "range": {
                        "type": "object",
                        "required": ["start", "end"],
                        "properties": {"start": {"type": "integer"}, "end": {"type": "integer"}},
                    },
                    "replacement": {"type": "string"},
                    "original": {"type": "string"},
                    "before": {"type": "string", "maxLength": 8},
                    "after": {"type": "string", "maxLength": 8},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "diffKind": {"type": "string", "enum": ["whitespace", "punctuation", "case", "wording"]},
                    "changedTokens": {"type": "integer"},
                    "justification": {"type": "string"},
                },
            },
        }
    },
    "required": ["suggestions"],
}

SYSTEM_PROMPT = """You are a careful copy editor.
Return only JSON objects that match the requested schema. Never rewrite whole sentences.
"""


def build_chunk_prompt(content: str, prefix_len: int) -> str:
    return (
        "Analyze ONLY the text block. Return JSON matching the provided schema.\n"
        "Policy:\n"
        "- Do not edit code (backticks/fenced), HTML, tables, URLs, or markdown link targets.\n"
        "- Focus on correctness (grammar, punctuation, spelling). Avoid broad rewrites. Preserve voice.\n"
        "- Style is allowed but must be minimal and clearly helpful. Output style only if:\n"
        "  * diffKind is whitespace, punctuation or case, OR\n"
        "  * your justification shows a correctness gain (not taste) and the edit is small.\n"
        "- For every item include: original (exact substring), and short context anchors: "
        "before (2-5 chars) and after (2-5 chars) when available.\n"
        f"- Prefer small, local fixes over rephrasing. Limit to {MAX_ITEMS_PER_CHUNK} items.\n"
        f"- The first {prefix_len} chars are context (overlap). Ranges must start >= {prefix_len}.\n"
        "\n"
        "Examples:\n"
        '{"title":"Spelling","category":"spelling","severity":"warn","range":{"start":10,"end":17},'
        '"original":"recieve","before":" to ","after":" the ","replacement":"receive","confidence":0.92}\n'
        '{"title":"Add space after punctuation","category":"spacing","severity":"info","range":{"start":5,"end":7},'
        '"original":",w","before":"Hello","after":"orld","replacement":", w","confidence":0.8,"diffKind":"whitespace"}\n'
        '{"title":"Sentence case","category":"style","severity":"info","range":{"start":40,"end":41},'
        '"original":"t","replacement":"T","confidence":0.85,"diffKind":"case","justification":"Capitalize sentence start"}\n'
        "\n"
        f"BLOCK START\n{content}\nBLOCK END"
    )


def _http_post_json(
    url: str,
    payload: dict[str, Any],
    *,
    headers: dict[str, str],
    timeout_s: float,
    provider: str,
) -> Any:
    req = urllib.request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if hasattr(e, "read") else ""
        raise RuntimeError(f"{provider} HTTPError {e.code}: {body}") from e
    except Exception as e:
        raise RuntimeError(f"{provider} request failed: {e}") from e


def _require_api_key(env_name: str) -> str:
    api_key = os.environ.get(env_name)
    if not api_key:
        raise RuntimeError(f"{env_name} is not set")
    return api_key


@dataclass(frozen=True)
class MockSuggestClient:
    """Deterministic offline client: replays canned responses, then returns no suggestions."""

    responses: tuple[str, ...] = ()
    calls: list[str] = field(default_factory=list, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, compare=False, repr=False)

    def suggest(self, prompt: str, context: dict[str, Any]) -> str:
        with self._lock:
            idx = len(self.calls)
            self.calls.append(prompt)
        if idx < len(self.responses):
            return self.responses[idx]
        return json.dumps({"suggestions": []})


@dataclass(frozen=True)
class OpenAIChatCompletionsClient:
    """Minimal OpenAI Chat Completions client using JSON response format.

    Requires env:
      - OPENAI_API_KEY (or the variable named by ``api_key_env``)
    Optional:
      - OPENAI_BASE_URL (default https://api.openai.com)
    """

    model: str
    temperature: float = 0.2
    timeout_s: float = 60.0
    max_output_tokens: int = 4096
    base_url: str | None = None
    api_key_env: str = "OPENAI_API_KEY"

    def suggest(self, prompt: str, context: dict[str, Any]) -> str:
        api_key = _require_api_key(self.api_key_env)
        base = (self.base_url or os.environ.get("OPENAI_BASE_URL", "https://api.openai.com")).rstrip("/")
        payload = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        data = _http_post_json(
            f"{base}/v1/chat/completions",
            payload,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout_s=self.timeout_s,
            provider="OpenAI",
        )
        try:
            return data["choices"][0]["message"]["content"]
        except Exception as e:
            raise RuntimeError(f"Unexpected OpenAI response schema: {data}") from e


@dataclass(frozen=True)
class GeminiClient:
    """Google Gemini ``generateContent`` REST client with a structured response schema."""

    model: str
    temperature: float = 0.2
    timeout_s: float = 60.0
    max_output_tokens: int = 4096
    base_url: str | None = None
    api_key_env: str = "GEMINI_API_KEY"

    def suggest(self, prompt: str, context: dict[str, Any]) -> str:
        api_key = _require_api_key(self.api_key_env)
        base = (self.base_url or "https://generativelanguage.googleapis.com").rstrip("/")
        model = urllib.parse.quote(self.model, safe="")
        payload = {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "topP": 0.9,
                "topK": 40,
                "maxOutputTokens": self.max_output_tokens,
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }
        data = _http_post_json(
            f"{base}/v1beta/models/{model}:generateContent",
            payload,
            headers={"x-goog-api-key": api_key},
            timeout_s=self.timeout_s,
            provider="Gemini",
        )
        try:
            parts = data["candidates"][0]["content"]["parts"]
            return "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict))
        except Exception as e:
            raise RuntimeError(f"Unexpected Gemini response schema: {data}") from e


@dataclass(frozen=True)
class OllamaChatClient:
    """Local Ollama chat client (``format: json``)."""

    model: str
    temperature: float = 0.2
    timeout_s: float = 60.0
    max_output_tokens: int = 4096
    base_url: str = "http://localhost:11434"

    def suggest(self, prompt: str, context: dict[str, Any]) -> str:
        payload = {
            "model": self.model,
            "stream": False,
            "format": "json",
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "options": {"num_predict": self.max_output_tokens, "temperature": self.temperature},
        }
        data = _http_post_json(
            f"{self.base_url.rstrip('/')}/api/chat",
            payload,
            headers={},
            timeout_s=self.timeout_s,
            provider="Ollama",
        )
        try:
            return data["message"]["content"]
        except Exception as e:
            raise RuntimeError(f"Unexpected Ollama response schema: {data}") from e


def build_suggest_client(
    provider: str,
    model: str,
    temperature: float,
    timeout_s: float,
    max_output_tokens: int,
    *,
    base_url: str | None = None,
    api_key_env: str | None = None,
) -> SuggestClient:
    provider_norm = provider.strip().lower()
    if provider_norm == "mock":
        return MockSuggestClient()
    if provider_norm == "openai":
        return OpenAIChatCompletionsClient(
            model=model,
            temperature=temperature,
            timeout_s=timeout_s,
            max_output_tokens=max_output_tokens,
            base_url=base_url,
            api_key_env=api_key_env or "OPENAI_API_KEY",
        )
    if provider_norm == "gemini":
        return GeminiClient(
            model=model,
            temperature=temperature,
            timeout_s=timeout_s,
            max_output_tokens=max_output_tokens,
            base_url=base_url,
            api_key_env=api_key_env or "GEMINI_API_KEY",
        )
    if provider_norm == "ollama":
        return OllamaChatClient(
            model=model,
            temperature=temperature,
            timeout_s=timeout_s,
            max_output_tokens=max_output_tokens,
            base_url=base_url or os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434"),
        )
    raise ValueError(f"Unknown LLM provider: {provider}")
