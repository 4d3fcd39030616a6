from __future__ import annotations

import time
from typing import Any, Protocol

from idea_engine.llm_client.base import GenerationResult, SamplingConfig
from idea_engine.llm_client.cost import estimate_llm_cost
from idea_engine.llm_client.normalize_usage import normalize_openai_usage

DEFAULT_FAST_MODEL = "gpt-5-mini"


class OpenAIResponsesService(Protocol):
    def create(self, **kwargs: Any) -> Any: ...


class OpenAIGenerationClient:
    """Fast structuring mode backed by the OpenAI Responses API."""

    provider = "openai"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        responses_service: OpenAIResponsesService | None = None,
        pricing_config: dict[str, Any] | None = None,
        default_model: str = DEFAULT_FAST_MODEL,
    ) -> None:
        self._api_key = api_key
        self._responses_service = responses_service
        self._pricing_config = pricing_config or {}
        self._default_model = default_model

    def generate(
        self,
        *,
        prompt: str,
        system_instruction: str,
        sampling: SamplingConfig,
    ) -> GenerationResult:
        service = self._resolve_service()
        model = sampling.model or self._default_model
        payload = self.build_request_payload(
            prompt=prompt,
            system_instruction=system_instruction,
            model=model,
            sampling=sampling,
        )

        start_time = time.perf_counter()
        response = service.create(**payload)
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        response_payload = _to_dict(response)
        text = _extract_openai_output_text(response=response, payload=response_payload)

        usage_raw = _extract_usage(response=response, payload=response_payload)
        usage_normalized = normalize_openai_usage(usage_raw)
        cost = estimate_llm_cost(
            pricing_config=self._pricing_config,
            provider=self.provider,
            model=model,
            usage_normalized=usage_normalized,
        )

        return GenerationResult(
            text=text,
            provider=self.provider,
            model=model,
            finish_reason=_extract_finish_reason(response_payload),
            usage_raw=usage_raw,
            usage_normalized=usage_normalized,
            cost=cost,
            timings={"t_generation_ms": elapsed_ms},
        )

    @staticmethod
    def build_request_payload(
        *,
        prompt: str,
        system_instruction: str,
        model: str,
        sampling: SamplingConfig,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "input": [
                {
                    "role": "system",
                    "content": [{"type": "input_text", "text": system_instruction}],
                },
                {
                    "role": "user",
                    "content": [{"type": "input_text", "text": prompt}],
                },
            ],
        }

        reasoning_effort = str(sampling.reasoning_effort or "auto")
        if reasoning_effort in {"low", "medium", "high"}:
            payload["reasoning"] = {"effort": reasoning_effort}

        if sampling.temperature is not None:
            payload["temperature"] = sampling.temperature

        if sampling.max_output_tokens is not None:
            payload["max_output_tokens"] = int(sampling.max_output_tokens)

        if sampling.timeout_seconds is not None:
            payload["timeout"] = float(sampling.timeout_seconds)

        return payload

    def _resolve_service(self) -> OpenAIResponsesService:
        if self._responses_service is not None:
            return self._responses_service

        if self._api_key is None:
            raise ValueError("OpenAI API key is required when service is not injected")

        try:
            from openai import OpenAI
        except ImportError as error:
            raise RuntimeError("openai package is not installed") from error

        client = OpenAI(api_key=self._api_key, max_retries=0)
        self._responses_service = client.responses
        return self._responses_service


def _extract_usage(*, response: Any, payload: dict[str, Any]) -> dict[str, Any]:
    usage = payload.get("usage")
    if isinstance(usage, dict):
        return usage

    response_usage = getattr(response, "usage", None)
    if response_usage is None:
        return {}

    return _to_dict(response_usage)


def _extract_finish_reason(payload: dict[str, Any]) -> str | None:
    status = payload.get("status")
    details = payload.get("incomplete_details")
    if isinstance(details, dict) and details.get("reason"):
        return str(details["reason"])
    return str(status) if status else None


def _extract_openai_output_text(*, response: Any, payload: dict[str, Any]) -> str | None:
    output_text = getattr(response, "output_text", None)
    if isinstance(output_text, str) and output_text:
        return output_text

    payload_text = payload.get("output_text")
    if isinstance(payload_text, str) and payload_text:
        return payload_text

    output = payload.get("output")
    if not isinstance(output, list):
        return None

    chunks: list[str] = []
    found = False
    for item in output:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        if not isinstance(content, list):
            continue
        for content_item in content:
            if not isinstance(content_item, dict):
                continue
            text = content_item.get("text")
            if isinstance(text, str):
                found = True
                chunks.append(text)

    return "".join(chunks) if found else None


def _to_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, dict):
            return dumped

    return {}
