"""Resolve which adapter and credential serve an account's chat call."""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from typing import Any

import structlog

from chatrelay.config import ProvidersConfig
from chatrelay.db.engine import Database
from chatrelay.errors import ConfigurationError
from chatrelay.providers.base import ProviderAdapter
from chatrelay.tools.base import ToolRegistry

logger = structlog.get_logger()

SUPPORTED_PROVIDERS = ("openai", "gemini", "anthropic")

AdapterFactory = Callable[..., ProviderAdapter]


def credential_fingerprint(api_key: str) -> str:
    """Stable, non-reversible cache key for a credential."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


def default_adapter_factory(provider: str, **kwargs: Any) -> ProviderAdapter:
    match provider:
        case "gemini":
            from chatrelay.providers.gemini import GeminiAdapter

            return GeminiAdapter(**kwargs)
        case "openai" | "anthropic":
            from chatrelay.providers.litellm_adapter import LiteLLMAdapter

            return LiteLLMAdapter(provider=provider, **kwargs)
        case _:
            raise ConfigurationError(f"Unsupported AI provider: {provider}", provider=provider)


class ProviderSelector:
    """Credential lookup plus an adapter cache keyed by (provider, fingerprint)."""

    def __init__(
        self,
        db: Database,
        registry: ToolRegistry,
        config: ProvidersConfig,
        adapter_factory: AdapterFactory = default_adapter_factory,
    ) -> None:
        self.db = db
        self.registry = registry
        self.config = config
        self.adapter_factory = adapter_factory
        self._adapters: dict[tuple[str, str], ProviderAdapter] = {}

    def default_model(self, provider: str) -> str:
        return self.config.default_models.get(provider, "")

    async def resolve_credential(self, account_id: str, provider: str) -> str:
        """Stored account key first, then the environment fallback."""
        stored = await self.db.find_credential(account_id, provider)
        if stored:
            return stored
        fallback = self.config.fallback_key(provider)
        if fallback:
            logger.debug("providers.credential.env_fallback", provider=provider)
            return fallback
        raise ConfigurationError(
            f"No API key configured for {provider}",
            provider=provider,
        )

    async def select(self, account_id: str, provider: str) -> ProviderAdapter:
        provider = (provider or "").strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(f"Unsupported AI provider: {provider!r}", provider=provider)

        api_key = await self.resolve_credential(account_id, provider)
        cache_key = (provider, credential_fingerprint(api_key))
        adapter = self._adapters.get(cache_key)
        if adapter is None:
            adapter = self.adapter_factory(
                provider,
                api_key=api_key,
                registry=self.registry,
                default_model=self.default_model(provider),
                max_rounds=self.config.max_tool_rounds,
                temperature=self.config.temperature,
                max_output_tokens=self.config.max_output_tokens,
            )
            self._adapters[cache_key] = adapter
            logger.info("providers.adapter.created", provider=provider, fingerprint=cache_key[1])
        return adapter

    async def check_credentials(self) -> bool:
        """Startup check: is any credential available at all?"""
        available = any(self.config.fallback_key(p) for p in SUPPORTED_PROVIDERS)
        if not available:
            available = await self.db.any_credential_exists()
        if available:
            return True
        if self.config.require_credentials:
            raise ConfigurationError("No AI provider credential is configured anywhere")
        logger.warning(
            "providers.no_credentials",
            hint="Add an account API key or set CHATRELAY_PROVIDERS_<PROVIDER>_API_KEY",
        )
        return False
