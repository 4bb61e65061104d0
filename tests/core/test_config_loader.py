import json
from pathlib import Path

import pytest

from src.turnkit.core.config_loader import (
    clear_config_cache,
    get_default_model,
    get_fallback_model,
    get_logging_config,
    get_model_by_alias,
    get_model_config,
    get_pipeline_config,
    get_provider_config,
    get_weather_config,
    load_config,
    load_config_or_empty,
    resolve_config_path,
)


def _write_json(path: Path, payload: dict) -> None:
    path.write_text(json.dumps(payload), encoding="utf-8")


def test_resolve_config_path_uses_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    config_path = tmp_path / "custom.json"
    _write_json(config_path, {"ok": True})
    monkeypatch.setenv("TURNKIT_CONFIG_PATH", str(config_path))

    resolved = resolve_config_path()
    assert resolved == config_path.resolve()


def test_explicit_path_beats_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    env_path = tmp_path / "env.json"
    explicit = tmp_path / "explicit.json"
    monkeypatch.setenv("TURNKIT_CONFIG_PATH", str(env_path))

    assert resolve_config_path(explicit) == explicit.resolve()


def test_load_config_reads_json_file(tmp_path: Path):
    clear_config_cache()
    config_path = tmp_path / "config.json"
    payload = {"timezone": "America/New_York"}
    _write_json(config_path, payload)

    result = load_config(config_path=config_path, use_cache=False)
    assert result == payload


def test_load_config_invalid_json_raises_value_error(tmp_path: Path):
    clear_config_cache()
    config_path = tmp_path / "config.json"
    config_path.write_text("{ invalid", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid JSON in config file"):
        load_config(config_path=config_path, use_cache=False)


def test_load_config_rejects_non_object_root(tmp_path: Path):
    clear_config_cache()
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ValueError, match="must be a JSON object"):
        load_config(config_path=config_path, use_cache=False)


def test_load_config_or_empty_for_missing_file(tmp_path: Path):
    clear_config_cache()
    assert load_config_or_empty(tmp_path / "missing.json") == {}
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.json")


def test_section_getters_ignore_non_object_sections():
    config = {
        "pipeline": {"tool_loop_max_steps": 3},
        "logging": {"level": "DEBUG"},
        "weather": "not-a-dict",
    }
    assert get_pipeline_config(config) == {"tool_loop_max_steps": 3}
    assert get_logging_config(config) == {"level": "DEBUG"}
    assert get_weather_config(config) == {}


def test_model_helpers_resolve_default_fallback_and_provider():
    config = {
        "default_model_alias": "primary",
        "fallback_model_alias": "backup",
        "model_providers": {"openrouter": {"apikey": "x"}},
        "models": {
            "gpt_mini": {"alias": "primary", "endpoint": "openai/gpt-mini", "provider": "openrouter"},
            "gpt_big": {"alias": "backup", "endpoint": "openai/gpt-big", "provider": "openrouter"},
        },
    }

    assert get_model_by_alias("backup", config)[0] == "gpt_big"
    default_model_id, default_model = get_default_model(config)
    assert default_model_id == "gpt_mini"
    assert default_model["endpoint"] == "openai/gpt-mini"
    assert get_fallback_model(config)[0] == "gpt_big"
    assert get_model_config("gpt_big", config)[0] == "gpt_big"
    assert get_model_config("primary", config)[0] == "gpt_mini"
    assert get_model_config(None, config)[0] == "gpt_mini"
    assert get_provider_config("openrouter", config)["apikey"] == "x"


def test_fallback_model_is_optional():
    assert get_fallback_model({"models": {}}) is None


def test_alias_errors_raise_value_error():
    config = {
        "models": {
            "a": {"alias": "dup"},
            "b": {"alias": "dup"},
        },
        "model_providers": {},
    }
    with pytest.raises(ValueError, match="not unique"):
        get_model_by_alias("dup", config)
    with pytest.raises(ValueError, match="No model found"):
        get_model_by_alias("nope", config)
    with pytest.raises(ValueError, match="not defined"):
        get_provider_config("openai", config)
