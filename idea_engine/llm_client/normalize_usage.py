from __future__ import annotations

from typing import Any, Iterable

USAGE_KEYS = ("prompt_tokens", "completion_tokens", "total_tokens", "thoughts_tokens")


def normalize_openai_usage(usage: dict[str, Any] | None) -> dict[str, int | None]:
    usage_data = usage or {}

    prompt_tokens = _first_int(usage_data, "input_tokens", "prompt_tokens", "inputTokens")
    completion_tokens = _first_int(
        usage_data, "output_tokens", "completion_tokens", "outputTokens"
    )
    total_tokens = _first_int(usage_data, "total_tokens", "totalTokens")
    if total_tokens is None:
        total_tokens = _sum_tokens(prompt_tokens, completion_tokens)

    details = usage_data.get("output_tokens_details")
    thoughts_tokens = (
        _first_int(details, "reasoning_tokens") if isinstance(details, dict) else None
    )

    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
        "thoughts_tokens": thoughts_tokens,
    }


def normalize_gemini_usage(usage: dict[str, Any] | None) -> dict[str, int | None]:
    usage_data = usage or {}

    prompt_tokens = _first_int(
        usage_data, "prompt_token_count", "promptTokenCount", "prompt_tokens"
    )
    completion_tokens = _first_int(
        usage_data, "candidates_token_count", "candidatesTokenCount", "completion_tokens"
    )
    total_tokens = _first_int(
        usage_data, "total_token_count", "totalTokenCount", "total_tokens"
    )
    if total_tokens is None:
        total_tokens = _sum_tokens(prompt_tokens, completion_tokens)
    thoughts_tokens = _first_int(
        usage_data, "thoughts_token_count", "thoughtsTokenCount", "thoughts_tokens"
    )

    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
        "thoughts_tokens": thoughts_tokens,
    }


def merge_usage(items: Iterable[dict[str, int | None]]) -> dict[str, int | None]:
    """Sum normalized usage across calls; a key stays None if no call reported it."""
    totals: dict[str, int | None] = {key: None for key in USAGE_KEYS}
    for item in items:
        for key in USAGE_KEYS:
            value = item.get(key)
            if value is None:
                continue
            totals[key] = (totals[key] or 0) + int(value)
    return totals


def _first_int(data: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return int(value)
    return None


def _sum_tokens(prompt_tokens: int | None, completion_tokens: int | None) -> int | None:
    if prompt_tokens is None and completion_tokens is None:
        return None

    return int((prompt_tokens or 0) + (completion_tokens or 0))
