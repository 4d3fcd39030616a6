from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="IDEA_ENGINE_",
        extra="ignore",
    )

    environment: str = "local"
    data_dir: Path = Path("data")
    sqlite_path: Path = Path("data/idea_engine.sqlite3")
    prompts_root: Path = Path("idea_engine/prompts")

    providers_config_path: Path = Path("idea_engine/config/providers.yaml")
    pricing_config_path: Path = Path("idea_engine/config/pricing.yaml")

    log_level: str = "INFO"
    log_file: Path | None = None

    fast_provider: str = "openai"
    fast_model: str = "gpt-5-mini"
    research_provider: str = "google"
    research_model: str = "gemini-2.5-pro"
    fast_timeout_seconds: float = Field(default=60.0, gt=0)
    research_timeout_seconds: float = Field(default=180.0, gt=0)

    repair_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    repair_max_output_tokens: int = Field(default=2000, ge=1)

    stage_max_retries: int = Field(default=1, ge=0)
    stage_retry_base_delay_seconds: float = Field(default=2.0, ge=0.0)

    prompt_cache_ttl_seconds: float = Field(default=300.0, gt=0)

    scheduled_batch_size: int = Field(
        default=4,
        ge=1,
        validation_alias=AliasChoices(
            "IDEA_ENGINE_SCHEDULED_BATCH_SIZE",
            "DAILY_IDEA_COUNT",
        ),
    )
    on_demand_batch_size: int = Field(
        default=3,
        ge=1,
        validation_alias=AliasChoices(
            "IDEA_ENGINE_ON_DEMAND_BATCH_SIZE",
            "ON_DEMAND_IDEA_COUNT",
        ),
    )
    batch_delay_seconds: float = Field(default=10.0, ge=0.0)
    novelty_window_hours: int = Field(default=24, ge=1)

    poll_interval_seconds: float = Field(default=0.5, gt=0)

    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("IDEA_ENGINE_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    google_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "IDEA_ENGINE_GOOGLE_API_KEY", "GOOGLE_API_KEY", "GEMINI_API_KEY"
        ),
    )

    @property
    def project_root(self) -> Path:
        return Path(__file__).resolve().parents[2]

    @property
    def resolved_data_dir(self) -> Path:
        return self._resolve_path(self.data_dir)

    @property
    def resolved_sqlite_path(self) -> Path:
        return self._resolve_path(self.sqlite_path)

    @property
    def resolved_prompts_root(self) -> Path:
        return self._resolve_path(self.prompts_root)

    @property
    def resolved_providers_config_path(self) -> Path:
        return self._resolve_path(self.providers_config_path)

    @property
    def resolved_pricing_config_path(self) -> Path:
        return self._resolve_path(self.pricing_config_path)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as file:
            data = yaml.safe_load(file) or {}

        if not isinstance(data, dict):
            raise ValueError(f"YAML config must contain object root: {path}")

        return data

    @property
    def providers_config(self) -> dict[str, Any]:
        return self.load_yaml(self.resolved_providers_config_path)

    @property
    def pricing_config(self) -> dict[str, Any]:
        return self.load_yaml(self.resolved_pricing_config_path)

    def stage_overrides(self, stage_name: str) -> dict[str, Any]:
        """Per-stage sampling overrides from providers.yaml ``stages`` section."""
        stages = self.providers_config.get("stages", {})
        if not isinstance(stages, dict):
            return {}
        overrides = stages.get(stage_name, {})
        return overrides if isinstance(overrides, dict) else {}

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
