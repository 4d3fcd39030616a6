from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from idea_engine.config.settings import Settings


def test_settings_reads_env_override(monkeypatch, tmp_path: Path) -> None:
    db_path = tmp_path / "custom.sqlite3"
    monkeypatch.setenv("IDEA_ENGINE_SQLITE_PATH", str(db_path))

    settings = Settings(_env_file=None)

    assert settings.sqlite_path == db_path
    assert settings.resolved_sqlite_path == db_path.resolve()


def test_settings_loads_provider_config_and_stage_overrides() -> None:
    settings = Settings(_env_file=None)

    providers = settings.providers_config

    assert "openai" in providers["llm_providers"]
    assert providers["llm_providers"]["google"]["mode"] == "research"
    assert settings.stage_overrides("critique") == {
        "temperature": 0.2,
        "max_output_tokens": 800,
    }
    assert settings.stage_overrides("unknown_stage") == {}


def test_settings_loads_pricing_config() -> None:
    settings = Settings(_env_file=None)

    pricing = settings.pricing_config

    assert pricing["currency"] == "USD"
    assert "gpt-5-mini" in pricing["llm"]["openai"]["models"]


def test_batch_sizes_accept_legacy_env_names(monkeypatch) -> None:
    monkeypatch.setenv("DAILY_IDEA_COUNT", "6")
    monkeypatch.setenv("ON_DEMAND_IDEA_COUNT", "2")

    settings = Settings(_env_file=None)

    assert settings.scheduled_batch_size == 6
    assert settings.on_demand_batch_size == 2


def test_api_keys_fall_back_to_provider_env_names(monkeypatch) -> None:
    monkeypatch.delenv("IDEA_ENGINE_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("IDEA_ENGINE_GOOGLE_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("GEMINI_API_KEY", "gm-test")

    settings = Settings(_env_file=None)

    assert settings.openai_api_key == "sk-test"
    assert settings.google_api_key == "gm-test"


def test_invalid_values_are_rejected(monkeypatch) -> None:
    monkeypatch.setenv("IDEA_ENGINE_PROMPT_CACHE_TTL_SECONDS", "0")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_load_yaml_rejects_missing_and_non_object_files(tmp_path: Path) -> None:
    settings = Settings(_env_file=None)
    list_yaml = tmp_path / "list.yaml"
    list_yaml.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(FileNotFoundError):
        settings.load_yaml(tmp_path / "missing.yaml")
    with pytest.raises(ValueError, match="object root"):
        settings.load_yaml(list_yaml)
