from __future__ import annotations

import time
from typing import Any, Protocol

from idea_engine.llm_client.base import GenerationResult, SamplingConfig, Source
from idea_engine.llm_client.cost import estimate_llm_cost
from idea_engine.llm_client.normalize_usage import normalize_gemini_usage

DEFAULT_RESEARCH_MODEL = "gemini-2.5-pro"


class GeminiGenerateService(Protocol):
    def generate_content(self, **kwargs: Any) -> Any: ...


class GeminiGenerationClient:
    """Internet-grounded research mode backed by Gemini with Google Search."""

    provider = "google"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        generate_service: GeminiGenerateService | None = None,
        pricing_config: dict[str, Any] | None = None,
        default_model: str = DEFAULT_RESEARCH_MODEL,
        grounded: bool = True,
    ) -> None:
        self._api_key = api_key
        self._generate_service = generate_service
        self._pricing_config = pricing_config or {}
        self._default_model = default_model
        self._grounded = grounded

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
            grounded=self._grounded,
        )

        start_time = time.perf_counter()
        response = service.generate_content(**payload)
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        response_payload = _to_dict(response)
        text = _extract_gemini_output_text(response=response, payload=response_payload)

        usage_raw = _extract_usage(response=response, payload=response_payload)
        usage_normalized = normalize_gemini_usage(usage_raw)
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
            sources=extract_grounding_sources(response_payload),
            timings={"t_generation_ms": elapsed_ms},
        )

    @staticmethod
    def build_request_payload(
        *,
        prompt: str,
        system_instruction: str,
        model: str,
        sampling: SamplingConfig,
        grounded: bool = True,
    ) -> dict[str, Any]:
        config: dict[str, Any] = {"system_instruction": system_instruction}

        if grounded:
            config["tools"] = [{"google_search": {}}]

        mapped_level = _map_thinking_level(str(sampling.reasoning_effort or "auto"))
        if mapped_level is not None:
            config["thinking_config"] = {"thinking_level": mapped_level}

        if sampling.temperature is not None:
            config["temperature"] = sampling.temperature

        if sampling.max_output_tokens is not None:
            config["max_output_tokens"] = int(sampling.max_output_tokens)

        if sampling.timeout_seconds is not None:
            config["http_options"] = {"timeout": int(sampling.timeout_seconds * 1000)}

        return {
            "model": model,
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "config": config,
        }

    def _resolve_service(self) -> GeminiGenerateService:
        if self._generate_service is not None:
            return self._generate_service

        if self._api_key is None:
            raise ValueError("Google API key is required when service is not injected")

        try:
            from google import genai
        except ImportError as error:
            raise RuntimeError("google-genai package is not installed") from error

        # The models service is only valid while its client is referenced.
        client = getattr(self, "_genai_client", None)
        if client is None:
            client = genai.Client(api_key=self._api_key)
            self._genai_client = client

        self._generate_service = client.models
        return self._generate_service


def extract_grounding_sources(payload: dict[str, Any]) -> list[Source]:
    sources: list[Source] = []
    seen: set[str] = set()
    candidates = payload.get("candidates")
    if not isinstance(candidates, list):
        return sources

    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        metadata = candidate.get("grounding_metadata") or candidate.get(
            "groundingMetadata"
        )
        if not isinstance(metadata, dict):
            continue
        chunks = metadata.get("grounding_chunks") or metadata.get("groundingChunks")
        if not isinstance(chunks, list):
            continue
        for chunk in chunks:
            web = chunk.get("web") if isinstance(chunk, dict) else None
            if not isinstance(web, dict):
                continue
            url = web.get("uri")
            if not isinstance(url, str) or not url or url in seen:
                continue
            seen.add(url)
            title = web.get("title")
            sources.append(Source(title=str(title) if title else None, url=url))

    return sources


def _map_thinking_level(value: str) -> str | None:
    normalized = value.strip().lower()
    if normalized == "auto":
        return None
    if normalized not in {"low", "medium", "high"}:
        return None
    return normalized


def _extract_usage(*, response: Any, payload: dict[str, Any]) -> dict[str, Any]:
    usage = payload.get("usage_metadata")
    if isinstance(usage, dict):
        return usage

    usage_camel = payload.get("usageMetadata")
    if isinstance(usage_camel, dict):
        return usage_camel

    response_usage = getattr(response, "usage_metadata", None)
    if response_usage is not None:
        return _to_dict(response_usage)

    return {}


def _extract_finish_reason(payload: dict[str, Any]) -> str | None:
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    first = candidates[0]
    if not isinstance(first, dict):
        return None
    reason = first.get("finish_reason") or first.get("finishReason")
    return str(reason) if reason else None


def _extract_gemini_output_text(*, response: Any, payload: dict[str, Any]) -> str | None:
    direct_text = getattr(response, "text", None)
    if isinstance(direct_text, str) and direct_text:
        return direct_text

    candidates = payload.get("candidates")
    if not isinstance(candidates, list):
        return None

    chunks: list[str] = []
    found = False
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content")
        if not isinstance(content, dict):
            continue
        parts = content.get("parts")
        if not isinstance(parts, list):
            continue
        for part in parts:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if isinstance(text, str):
                found = True
                chunks.append(text)
        if found:
            break

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
