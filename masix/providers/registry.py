from __future__ import annotations

import logging

from masix.config.loader import ProviderConfig, RuntimeConfig
from masix.providers.base import ChatProvider, PermanentProviderError
from masix.providers.openai_compatible import OpenAICompatibleProvider

logger = logging.getLogger(__name__)

# Every supported backend speaks the chat/completions shape; the type is kept
# for diagnostics and the duplicate-target check.
_PROVIDER_MAP: dict[str, type[OpenAICompatibleProvider]] = {
    "openai": OpenAICompatibleProvider,
    "openrouter": OpenAICompatibleProvider,
    "zai": OpenAICompatibleProvider,
    "deepseek": OpenAICompatibleProvider,
    "ollama": OpenAICompatibleProvider,
    "llama.cpp": OpenAICompatibleProvider,
    "groq": OpenAICompatibleProvider,
    "mistral": OpenAICompatibleProvider,
}


def build_provider(config: ProviderConfig, *, timeout: float = 120.0) -> ChatProvider:
    provider_cls = _PROVIDER_MAP.get(config.provider_type.strip().lower(), OpenAICompatibleProvider)
    return provider_cls(config, timeout=timeout)


class ProviderRegistry:
    """Builds providers lazily by name and keeps one client per provider."""

    def __init__(self, configs: list[ProviderConfig] | tuple[ProviderConfig, ...], *, timeout: float = 120.0) -> None:
        self._configs = {cfg.name: cfg for cfg in configs}
        self._timeout = timeout
        self._instances: dict[str, ChatProvider] = {}

    @classmethod
    def from_config(cls, config: RuntimeConfig, *, timeout: float = 120.0) -> "ProviderRegistry":
        return cls(config.providers.providers, timeout=timeout)

    def names(self) -> list[str]:
        return list(self._configs)

    def register(self, provider: ChatProvider) -> None:
        self._configs.setdefault(provider.name, provider.config)
        self._instances[provider.name] = provider

    def get(self, name: str) -> ChatProvider:
        if name in self._instances:
            return self._instances[name]
        config = self._configs.get(name)
        if config is None:
            raise PermanentProviderError(f"provider '{name}' is not configured")
        provider = build_provider(config, timeout=self._timeout)
        self._instances[name] = provider
        return provider

    async def aclose(self) -> None:
        for provider in self._instances.values():
            await provider.aclose()
        self._instances.clear()
