from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal, Mapping, Protocol

GenerationMode = Literal["fast", "research"]


@dataclass(frozen=True, slots=True)
class SamplingConfig:
    mode: GenerationMode = "fast"
    model: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    reasoning_effort: str | None = None
    timeout_seconds: float | None = None

    def with_overrides(self, overrides: Mapping[str, Any]) -> SamplingConfig:
        known = {
            key: value
            for key, value in overrides.items()
            if key in SamplingConfig.__dataclass_fields__
        }
        return replace(self, **known) if known else self


@dataclass(frozen=True, slots=True)
class Source:
    title: str | None
    url: str


@dataclass(frozen=True, slots=True)
class GenerationResult:
    """Raw output of one generation call.

    ``text is None`` means the provider produced no response at all, while an
    empty string means it answered with nothing. Callers treat both as a failed
    call but log them differently.
    """

    text: str | None
    provider: str
    model: str
    finish_reason: str | None = None
    usage_raw: dict[str, Any] = field(default_factory=dict)
    usage_normalized: dict[str, int | None] = field(default_factory=dict)
    cost: dict[str, Any] = field(default_factory=dict)
    sources: list[Source] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)

    @property
    def has_text(self) -> bool:
        return self.text is not None and bool(self.text.strip())


class GenerationClient(Protocol):
    def generate(
        self,
        *,
        prompt: str,
        system_instruction: str,
        sampling: SamplingConfig,
    ) -> GenerationResult: ...


class RoutedGenerationClient:
    """Dispatches each call to the client registered for ``sampling.mode``."""

    def __init__(
        self,
        *,
        fast: GenerationClient,
        research: GenerationClient | None = None,
    ) -> None:
        self._clients: dict[GenerationMode, GenerationClient] = {"fast": fast}
        if research is not None:
            self._clients["research"] = research

    def generate(
        self,
        *,
        prompt: str,
        system_instruction: str,
        sampling: SamplingConfig,
    ) -> GenerationResult:
        client = self._clients.get(sampling.mode)
        if client is None:
            raise ValueError(f"No generation client configured for mode: {sampling.mode}")
        return client.generate(
            prompt=prompt,
            system_instruction=system_instruction,
            sampling=sampling,
        )
