from __future__ import annotations

from idea_engine.llm_client.cost import estimate_llm_cost, total_cost_usd
from idea_engine.llm_client.normalize_usage import (
    merge_usage,
    normalize_gemini_usage,
    normalize_openai_usage,
)

PRICING = {
    "currency": "USD",
    "updated_at": "2026-09-01",
    "llm": {
        "openai": {"models": {"gpt-5.1": {"input": 1.25, "output": 10.0}}},
        "google": {"models": {"gemini-2.5-pro": {"input": 1.25, "output": 10.0}}},
    },
}


def test_normalize_openai_usage() -> None:
    normalized = normalize_openai_usage(
        {
            "input_tokens": 10,
            "output_tokens": 5,
            "output_tokens_details": {"reasoning_tokens": 2},
        }
    )

    assert normalized == {
        "prompt_tokens": 10,
        "completion_tokens": 5,
        "total_tokens": 15,
        "thoughts_tokens": 2,
    }


def test_normalize_gemini_usage() -> None:
    normalized = normalize_gemini_usage(
        {
            "prompt_token_count": 12,
            "candidates_token_count": 7,
            "total_token_count": 19,
            "thoughts_token_count": 3,
        }
    )

    assert normalized == {
        "prompt_tokens": 12,
        "completion_tokens": 7,
        "total_tokens": 19,
        "thoughts_tokens": 3,
    }


def test_missing_usage_normalizes_to_none() -> None:
    assert normalize_openai_usage(None) == {
        "prompt_tokens": None,
        "completion_tokens": None,
        "total_tokens": None,
        "thoughts_tokens": None,
    }


def test_merge_usage_sums_reported_keys_only() -> None:
    merged = merge_usage(
        [
            {"prompt_tokens": 10, "completion_tokens": 5, "thoughts_tokens": None},
            {"prompt_tokens": 3, "completion_tokens": None},
            {},
        ]
    )

    assert merged == {
        "prompt_tokens": 13,
        "completion_tokens": 5,
        "total_tokens": None,
        "thoughts_tokens": None,
    }


def test_estimate_llm_cost() -> None:
    cost = estimate_llm_cost(
        pricing_config=PRICING,
        provider="openai",
        model="gpt-5.1",
        usage_normalized={
            "prompt_tokens": 1_000,
            "completion_tokens": 2_000,
            "total_tokens": 3_000,
            "thoughts_tokens": None,
        },
    )

    assert cost["currency"] == "USD"
    assert cost["priced"] is True
    assert cost["pricing_version"] == "2026-09-01"
    assert cost["llm_cost_usd"] == 0.02125


def test_unknown_model_is_unpriced_and_costs_total() -> None:
    cost = estimate_llm_cost(
        pricing_config=PRICING,
        provider="google",
        model="gemini-unknown",
        usage_normalized={"prompt_tokens": 500, "completion_tokens": 500},
    )

    assert cost["priced"] is False
    assert cost["llm_cost_usd"] == 0.0
    assert total_cost_usd([{"llm_cost_usd": 0.02125}, cost, {}]) == 0.02125
