"""Provider construction by explicit dependency injection.

A ``ProviderRegistry`` is a value: callers build one (or use the default)
and pass it to whatever constructs providers. There is no process-wide
mutable registration.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import TYPE_CHECKING

from llmux.errors import ConfigurationError
from llmux.providers.anthropic import AnthropicProvider
from llmux.providers.compatible import OpenAICompatibleProvider
from llmux.providers.gemini import GeminiProvider
from llmux.providers.mock import MockProvider
from llmux.providers.openai import OpenAIProvider

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    import httpx

    from llmux.config import Config
    from llmux.providers.base import Provider

    ProviderFactory = Callable[[Config, "httpx.AsyncClient | None"], Provider]


def _openai(config: Config, http_client: httpx.AsyncClient | None) -> Provider:
    return OpenAIProvider(
        config.model,
        api_key=config.api_key or "",
        base_url=config.base_url,
        timeout_s=config.timeout_s,
        http_client=http_client,
    )


def _anthropic(config: Config, http_client: httpx.AsyncClient | None) -> Provider:
    return AnthropicProvider(
        config.model,
        api_key=config.api_key or "",
        base_url=config.base_url,
        timeout_s=config.timeout_s,
        http_client=http_client,
    )


def _gemini(config: Config, http_client: httpx.AsyncClient | None) -> Provider:
    return GeminiProvider(
        config.model,
        api_key=config.api_key or "",
        base_url=config.base_url,
        timeout_s=config.timeout_s,
        http_client=http_client,
    )


def _compatible(config: Config, http_client: httpx.AsyncClient | None) -> Provider:
    return OpenAICompatibleProvider(
        config.model,
        provider=config.provider,
        api_key=config.api_key,
        base_url=config.base_url,
        timeout_s=config.timeout_s,
        http_client=http_client,
    )


DEFAULT_FACTORIES: Mapping[str, ProviderFactory] = MappingProxyType(
    {
        "openai": _openai,
        "anthropic": _anthropic,
        "gemini": _gemini,
        "grok": _compatible,
        "groq": _compatible,
        "mistral": _compatible,
        "openrouter": _compatible,
        "ollama": _compatible,
    }
)


class ProviderRegistry:
    """Immutable name -> factory map."""

    def __init__(self, factories: Mapping[str, ProviderFactory] | None = None) -> None:
        self._factories: Mapping[str, ProviderFactory] = MappingProxyType(
            dict(DEFAULT_FACTORIES if factories is None else factories)
        )

    @property
    def names(self) -> list[str]:
        return sorted(self._factories)

    def with_factory(self, name: str, factory: ProviderFactory) -> ProviderRegistry:
        """Return a new registry with *name* bound to *factory*."""
        return ProviderRegistry({**self._factories, name: factory})

    def create(
        self, config: Config, *, http_client: httpx.AsyncClient | None = None
    ) -> Provider:
        """Build the raw provider for *config*."""
        if config.use_mock:
            return MockProvider(config.model)
        factory = self._factories.get(config.provider)
        if factory is None:
            raise ConfigurationError(
                f"No provider factory registered for {config.provider!r}",
                hint=f"Registered providers: {', '.join(self.names)}",
            )
        return factory(config, http_client)
