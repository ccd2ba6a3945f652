"""Relay configuration — loads from chatrelay.yaml + environment."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatrelay.logging import resolve_level


def _load_yaml_config() -> dict[str, Any]:
    """Load chatrelay.yaml from CHATRELAY_CONFIG_PATH or the working directory."""
    config_path = os.getenv("CHATRELAY_CONFIG_PATH")
    search_paths = [Path(config_path)] if config_path else [Path("chatrelay.yaml")]
    for path in search_paths:
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}
    return {}


class RegistryConfig(BaseSettings):
    """Connector registry reconciliation settings."""

    poll_interval_s: float = Field(default=5.0, gt=0, description="Reconciliation interval")
    restart_cooldown_s: float = Field(
        default=30.0,
        ge=0,
        description="Minimum spacing between two stale restarts of the same connector",
    )
    stop_timeout_s: float = Field(default=10.0, gt=0, description="Per-connector stop bound")

    model_config = SettingsConfigDict(env_prefix="CHATRELAY_REGISTRY_")


class PipelineConfig(BaseSettings):
    """Message pipeline settings."""

    history_limit: int = Field(default=30, ge=1, le=50)
    default_provider: str = Field(default="openai")
    assistant_name: str = Field(default="Relay")

    model_config = SettingsConfigDict(env_prefix="CHATRELAY_PIPELINE_")


class ProvidersConfig(BaseSettings):
    """AI provider settings and environment fallback credentials."""

    max_tool_rounds: int = Field(default=3, ge=1, le=10)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=2048, gt=0)
    default_models: dict[str, str] = Field(
        default_factory=lambda: {
            "openai": "gpt-5.2-chat-latest",
            "gemini": "gemini-2.5-flash",
            "anthropic": "claude-sonnet-4-6",
        }
    )

    openai_api_key: str = ""
    gemini_api_key: str = ""
    anthropic_api_key: str = ""
    require_credentials: bool = Field(
        default=False,
        description="Refuse to start when no provider credential exists anywhere",
    )

    model_config = SettingsConfigDict(env_prefix="CHATRELAY_PROVIDERS_")

    def fallback_key(self, provider: str) -> str:
        """Return the environment fallback key for a provider, or ''."""
        return str(getattr(self, f"{provider}_api_key", "") or "").strip()


class ToolsConfig(BaseSettings):
    """Built-in tool settings."""

    web_search_enabled: bool = True
    search_url: str = "https://lite.duckduckgo.com/lite/"
    instant_answer_url: str = "https://api.duckduckgo.com/"
    search_timeout_s: float = Field(default=8.0, gt=0)
    instant_answer_timeout_s: float = Field(default=5.0, gt=0)
    page_timeout_s: float = Field(default=6.0, gt=0)
    max_results: int = Field(default=5, ge=1, le=10)
    max_pages: int = Field(default=3, ge=0, le=5)
    page_chars: int = Field(default=2000, ge=200)
    user_agent: str = "chatrelay/1.0 (compatible; bot)"

    model_config = SettingsConfigDict(env_prefix="CHATRELAY_TOOLS_")


class ChannelDefaults(BaseSettings):
    """Process-wide defaults shared by all connectors of a type."""

    request_timeout_s: float = Field(default=8.0, gt=0, le=10)
    telegram_api_base: str = "https://api.telegram.org"
    telegram_poll_timeout_s: int = Field(default=25, ge=1, le=60)
    telegram_retry_delay_s: float = Field(default=3.0, ge=0.1, le=30)
    whatsapp_bridge_url: str = "ws://127.0.0.1:3001"
    whatsapp_graph_base: str = "https://graph.facebook.com/v21.0"
    whatsapp_verify_token: str = ""
    discord_api_base: str = "https://discord.com/api/v10"
    discord_gateway_url: str = "wss://gateway.discord.gg/?v=10&encoding=json"
    slack_api_base: str = "https://slack.com/api"
    reconnect_base_s: float = Field(default=1.0, gt=0)
    reconnect_max_s: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="CHATRELAY_CHANNELS_")


class RelayConfig(BaseSettings):
    """Root relay configuration."""

    # Server
    host: str = Field(default="0.0.0.0", description="Server bind host")
    port: int = Field(default=8000, description="Server bind port")

    # Auth
    api_key: str = Field(default="", description="API key for status routes. Empty = no auth")

    # Storage
    data_dir: str = Field(default="./data")
    db_journal_mode: Literal["WAL", "DELETE"] = Field(default="WAL")
    db_busy_timeout_ms: int = Field(default=5000, ge=100, le=120000)

    # Sub-configs
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    channels: ChannelDefaults = Field(default_factory=ChannelDefaults)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")

    model_config = SettingsConfigDict(
        env_prefix="CHATRELAY_",
        env_nested_delimiter="__",
    )

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        resolve_level(value)
        return value.strip().upper()

    @classmethod
    def load(cls) -> RelayConfig:
        """Load config from YAML + env vars (env takes precedence)."""
        yaml_cfg = _load_yaml_config()

        sections: dict[str, type[BaseModel]] = {
            "registry": RegistryConfig,
            "pipeline": PipelineConfig,
            "providers": ProvidersConfig,
            "tools": ToolsConfig,
            "channels": ChannelDefaults,
        }

        # Only pass YAML sub-configs if they have data;
        # otherwise let pydantic-settings pick up env vars
        kwargs: dict[str, Any] = {}
        for key, value in yaml_cfg.items():
            section = sections.get(key)
            if section is None:
                kwargs[key] = value
            elif value:
                kwargs[key] = section(**value)

        return cls(**kwargs)


# Singleton
_config: RelayConfig | None = None


def get_config() -> RelayConfig:
    """Get or create the global config."""
    global _config
    if _config is None:
        _config = RelayConfig.load()
    return _config
