"""Token usage parsing shared by the output normalizers and the session adapters."""

from __future__ import annotations

from typing import Any, Iterable, Optional

from .models import TokenUsage
from .utils import read_int

INPUT_KEYS = ("input_tokens", "inputTokens", "prompt_tokens", "promptTokens", "input")
OUTPUT_KEYS = ("output_tokens", "outputTokens", "completion_tokens", "completionTokens", "output")
CACHE_READ_KEYS = (
    "cache_read_input_tokens",
    "cacheReadInputTokens",
    "cache_read_tokens",
    "cacheReadTokens",
    "cached_input_tokens",
    "cachedInputTokens",
    "cache_read",
    "cacheRead",
    "cached",
)
CACHE_WRITE_KEYS = (
    "cache_creation_input_tokens",
    "cacheCreationInputTokens",
    "cache_write_tokens",
    "cacheWriteTokens",
    "cache_write",
    "cacheWrite",
)
REASONING_KEYS = (
    "reasoning_tokens",
    "reasoningTokens",
    "reasoning_output_tokens",
    "reasoningOutputTokens",
    "reasoning",
    "thoughts",
)


def parse_usage(raw: Any) -> Optional[TokenUsage]:
    """Read a usage object under any of the key spellings the CLIs emit."""
    if not isinstance(raw, dict):
        return None
    cache = raw.get("cache")
    cache_read = read_int(raw, *CACHE_READ_KEYS)
    if cache_read is None:
        cache_read = read_int(cache, "read")
    cache_write = read_int(raw, *CACHE_WRITE_KEYS)
    if cache_write is None:
        cache_write = read_int(cache, "write")
    usage = TokenUsage(
        input=_non_negative(read_int(raw, *INPUT_KEYS)),
        output=_non_negative(read_int(raw, *OUTPUT_KEYS)),
        cache_read=_non_negative(cache_read),
        cache_write=_non_negative(cache_write),
        reasoning=_non_negative(read_int(raw, *REASONING_KEYS)),
    )
    return None if usage.is_empty() else usage


def _non_negative(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    return max(0, value)


def add_usage(left: Optional[TokenUsage], right: Optional[TokenUsage]) -> Optional[TokenUsage]:
    if left is None:
        return right
    if right is None:
        return left

    def plus(a: Optional[int], b: Optional[int]) -> Optional[int]:
        if a is None and b is None:
            return None
        return (a or 0) + (b or 0)

    return TokenUsage(
        input=plus(left.input, right.input),
        output=plus(left.output, right.output),
        cache_read=plus(left.cache_read, right.cache_read),
        cache_write=plus(left.cache_write, right.cache_write),
        reasoning=plus(left.reasoning, right.reasoning),
    )


def sum_usages(usages: Iterable[Optional[TokenUsage]]) -> Optional[TokenUsage]:
    total: Optional[TokenUsage] = None
    for usage in usages:
        total = add_usage(total, usage)
    return total


def model_tokens_usage(stats: Any) -> Optional[TokenUsage]:
    """Sum Gemini's ``stats.models.<name>.tokens`` blocks across every model a run used."""
    models = stats.get("models") if isinstance(stats, dict) else None
    if not isinstance(models, dict):
        return None
    usages = []
    for model_stats in models.values():
        tokens = model_stats.get("tokens") if isinstance(model_stats, dict) else None
        if not isinstance(tokens, dict):
            continue
        usage = TokenUsage(
            input=read_int(tokens, "prompt", "input"),
            output=read_int(tokens, "candidates", "output"),
            cache_read=read_int(tokens, "cached"),
            reasoning=read_int(tokens, "thoughts"),
        )
        if not usage.is_empty():
            usages.append(usage)
    return sum_usages(usages)
