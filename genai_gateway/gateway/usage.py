"""Token usage extraction.

Each adapter recognizes one response shape and maps it to TokenUsage:

  - Gemini REST:   {"usageMetadata": {"promptTokenCount", "candidatesTokenCount", "totalTokenCount"}}
  - OpenAI-style:  {"usage": {"prompt_tokens", "completion_tokens", "total_tokens"}}
  - Internal:      a TokenUsage, or an object with a ``usage`` TokenUsage attribute
                   (GenerationResult)

Adapters are tried in order; the first match wins. Unknown shapes yield None.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from genai_gateway.gateway.types import TokenUsage

UsageAdapter = Callable[[Any], "TokenUsage | None"]


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _from_gemini(result: Any) -> TokenUsage | None:
    if not isinstance(result, Mapping):
        return None
    meta = result.get("usageMetadata")
    if not isinstance(meta, Mapping):
        return None
    prompt = _int(meta.get("promptTokenCount"))
    completion = _int(meta.get("candidatesTokenCount"))
    total = _int(meta.get("totalTokenCount")) or prompt + completion
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _from_openai(result: Any) -> TokenUsage | None:
    if not isinstance(result, Mapping):
        return None
    usage = result.get("usage")
    if not isinstance(usage, Mapping):
        return None
    prompt = _int(usage.get("prompt_tokens"))
    completion = _int(usage.get("completion_tokens"))
    total = _int(usage.get("total_tokens")) or prompt + completion
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _from_internal(result: Any) -> TokenUsage | None:
    if isinstance(result, TokenUsage):
        return result
    usage = getattr(result, "usage", None)
    if isinstance(usage, TokenUsage):
        return usage
    return None


USAGE_ADAPTERS: list[UsageAdapter] = [_from_gemini, _from_openai, _from_internal]


def extract_token_usage(result: Any) -> TokenUsage | None:
    for adapter in USAGE_ADAPTERS:
        usage = adapter(result)
        if usage is not None:
            return usage
    return None
