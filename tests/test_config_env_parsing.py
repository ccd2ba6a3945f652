from __future__ import annotations

import pytest
from pydantic import ValidationError

from chatrelay.config import ChannelDefaults, ProvidersConfig, RegistryConfig, RelayConfig


def test_defaults_match_documented_values(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CHATRELAY_CONFIG_PATH", raising=False)

    config = RelayConfig.load()

    assert config.registry.poll_interval_s == 5.0
    assert config.pipeline.history_limit == 30
    assert config.providers.max_tool_rounds == 3
    assert config.providers.default_models["gemini"] == "gemini-2.5-flash"
    assert config.channels.request_timeout_s <= 10


def test_env_overrides_nested_sections(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CHATRELAY_REGISTRY_POLL_INTERVAL_S", "2.5")
    monkeypatch.setenv("CHATRELAY_PROVIDERS_OPENAI_API_KEY", " sk-env ")
    monkeypatch.setenv("CHATRELAY_PIPELINE_HISTORY_LIMIT", "12")

    config = RelayConfig.load()

    assert config.registry.poll_interval_s == 2.5
    assert config.pipeline.history_limit == 12
    assert config.providers.fallback_key("openai") == "sk-env"
    assert config.providers.fallback_key("gemini") == ""
    assert config.providers.fallback_key("unknown") == ""


def test_yaml_file_sections_are_loaded(monkeypatch, tmp_path) -> None:
    path = tmp_path / "relay.yaml"
    path.write_text(
        "port: 9100\n"
        "registry:\n"
        "  restart_cooldown_s: 60\n"
        "tools:\n"
        "  web_search_enabled: false\n"
        "channels:\n"
        "  whatsapp_verify_token: verify-me\n"
    )
    monkeypatch.setenv("CHATRELAY_CONFIG_PATH", str(path))

    config = RelayConfig.load()

    assert config.port == 9100
    assert config.registry.restart_cooldown_s == 60
    assert config.tools.web_search_enabled is False
    assert config.channels.whatsapp_verify_token == "verify-me"


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        RegistryConfig(poll_interval_s=0)
    with pytest.raises(ValidationError):
        ProvidersConfig(max_tool_rounds=0)
    with pytest.raises(ValidationError):
        ChannelDefaults(request_timeout_s=30)
