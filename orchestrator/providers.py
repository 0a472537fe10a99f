from __future__ import annotations

import contextlib
import json
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .config import get_settings

JSON_ONLY_SYSTEM = "You are a JSON-only API. Respond with strictly valid JSON that matches the provided JSON Schema."


@dataclass
class ProviderResult:
    """Normalized result from a provider."""

    parsed_json: Dict[str, Any]
    raw_text: str
    tokens_used: int = 0
    model: Optional[str] = None


@dataclass
class UsageMeter:
    """Token and model usage collected while one pipeline run is in flight."""

    tokens_used: int = 0
    models: List[str] = field(default_factory=list)

    def add(self, tokens: int, model: Optional[str]) -> None:
        self.tokens_used += max(0, int(tokens or 0))
        if model and model not in self.models:
            self.models.append(model)

    @property
    def model(self) -> Optional[str]:
        # The last distinct model is the one that produced the reply.
        return self.models[-1] if self.models else None


_current_meter: ContextVar[Optional[UsageMeter]] = ContextVar("orchestrator_usage_meter", default=None)


@contextlib.contextmanager
def metered() -> Iterator[UsageMeter]:
    """
    Collect record_usage() calls made inside the block.

    The meter is bound to the current context, so concurrent tasks each see
    their own totals.
    """
    meter = UsageMeter()
    token = _current_meter.set(meter)
    try:
        yield meter
    finally:
        _current_meter.reset(token)


def record_usage(tokens: int, model: Optional[str]) -> None:
    """Add usage to the active meter; a no-op outside metered()."""
    meter = _current_meter.get()
    if meter is not None:
        meter.add(tokens, model)


class BaseProvider:
    """
    Abstract provider interface.

    `complete_json` is synchronous; async callers run it in a worker thread.
    """

    def complete_json(
        self, prompt: str, *, schema: Mapping[str, Any], system: Optional[str] = None
    ) -> ProviderResult:  # pragma: no cover - interface only
        raise NotImplementedError


class StubProvider(BaseProvider):
    """
    Deterministic provider that fabricates JSON conforming to the given schema.

    Schema-aware enough for the intent, decision and reply schemas the AI
    service asks for: enums pick their first value, nullable fields are null,
    arrays are empty unless the schema demands items.
    """

    model = "stub"

    def complete_json(
        self, prompt: str, *, schema: Mapping[str, Any], system: Optional[str] = None
    ) -> ProviderResult:
        parsed = _generate_from_schema(schema)
        return ProviderResult(parsed_json=parsed, raw_text=json.dumps(parsed), tokens_used=0, model=self.model)


def _generate_from_schema(schema: Mapping[str, Any]) -> Any:
    """Very small deterministic JSON generator for Draft-07-style schemas."""
    if "enum" in schema and schema["enum"]:
        return schema["enum"][0]

    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        if "null" in schema_type:
            return None
        schema_type = schema_type[0] if schema_type else None

    if schema_type == "object":
        props = schema.get("properties", {}) or {}
        result: Dict[str, Any] = {}
        for name, sub in props.items():
            result[name] = _generate_from_schema(sub)
        # Fill required keys if they are not part of properties.
        for name in schema.get("required", []) or []:
            if name not in result:
                result[name] = None
        return result

    if schema_type == "array":
        items_schema = schema.get("items", {}) or {}
        return [_generate_from_schema(items_schema) for _ in range(int(schema.get("minItems", 0) or 0))]

    if schema_type == "string":
        # Small heuristics for nicer stub data.
        title = (schema.get("title") or "").lower()
        fmt = schema.get("format")

        if "reply" in title:
            return "Thanks, I've received your message."
        if "reason" in title:
            return "stub reasoning"
        if fmt == "date":
            return "2099-01-01"
        return "stub"

    if schema_type == "number":
        # Try to return a value in [0, 1] when that is the intended range.
        minimum = schema.get("minimum")
        maximum = schema.get("maximum")
        if minimum == 0 and maximum == 1:
            return 0.5
        return 1.0

    if schema_type == "integer":
        return 1

    if schema_type == "boolean":
        return False

    # Fallback for schemas without explicit type: generate an object.
    if "properties" in schema:
        return _generate_from_schema({"type": "object", **schema})

    return None


def _chat_completion_json(
    url: str,
    *,
    api_key: str,
    model: str,
    prompt: str,
    schema: Mapping[str, Any],
    system: Optional[str],
    timeout: float,
) -> ProviderResult:  # pragma: no cover - network
    import httpx

    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }

    body = {
        "model": model,
        "messages": [
            {
                "role": "system",
                "content": f"{system}\n\n{JSON_ONLY_SYSTEM}" if system else JSON_ONLY_SYSTEM,
            },
            {
                "role": "user",
                "content": prompt,
            },
        ],
        "response_format": {"type": "json_schema", "json_schema": {"name": "orchestrator_output", "schema": schema}},
    }

    resp = httpx.post(url, headers=headers, json=body, timeout=timeout)
    resp.raise_for_status()
    data = resp.json()
    raw_text = data["choices"][0]["message"]["content"]

    try:
        parsed = json.loads(raw_text)
    except json.JSONDecodeError:
        parsed = {}

    usage = data.get("usage") or {}
    return ProviderResult(
        parsed_json=parsed if isinstance(parsed, dict) else {},
        raw_text=raw_text,
        tokens_used=int(usage.get("total_tokens") or 0),
        model=data.get("model") or model,
    )


OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"


class OpenAIProvider(BaseProvider):
    def __init__(self, api_key: str, model: Optional[str] = None) -> None:
        self.api_key = api_key
        # Default model chosen conservatively; callers may override via env
        self.model = model or "gpt-4o-mini"

    def complete_json(
        self, prompt: str, *, schema: Mapping[str, Any], system: Optional[str] = None
    ) -> ProviderResult:  # pragma: no cover - network
        return _chat_completion_json(
            OPENAI_API_URL,
            api_key=self.api_key,
            model=self.model,
            prompt=prompt,
            schema=schema,
            system=system,
            timeout=30,
        )


OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterProvider(BaseProvider):
    """
    OpenRouter provider: one API key, many models (OpenAI, Claude, Gemini, etc.).
    """

    def __init__(self, api_key: str, model: Optional[str] = None) -> None:
        self.api_key = api_key
        self.model = model or "openai/gpt-4o-mini"

    def complete_json(
        self, prompt: str, *, schema: Mapping[str, Any], system: Optional[str] = None
    ) -> ProviderResult:  # pragma: no cover - network
        return _chat_completion_json(
            OPENROUTER_API_URL,
            api_key=self.api_key,
            model=self.model,
            prompt=prompt,
            schema=schema,
            system=system,
            timeout=60,
        )


def build_provider() -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    settings = get_settings()
    if settings.provider_name == "openrouter":
        api_key = _get_env("OPENROUTER_API_KEY")
        if not api_key:
            return StubProvider()
        model = settings.model_name if settings.model_name != "stub" else "openai/gpt-4o-mini"
        return OpenRouterProvider(api_key=api_key, model=model)
    if settings.provider_name == "openai":
        api_key = _get_env("OPENAI_API_KEY")
        if not api_key:
            return StubProvider()
        model = settings.model_name if settings.model_name != "stub" else None
        return OpenAIProvider(api_key=api_key, model=model)

    return StubProvider()


def _get_env(name: str) -> Optional[str]:
    import os

    return os.getenv(name) or None
