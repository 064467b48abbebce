"""Configuration: frozen Config with explicit provider/model requirements."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Literal

from dotenv import load_dotenv

from llmux.errors import ConfigurationError
from llmux.retry import RetryPolicy

load_dotenv()

ProviderName = Literal[
    "openai",
    "anthropic",
    "gemini",
    "grok",
    "groq",
    "mistral",
    "openrouter",
    "ollama",
]

# Provider-specific API key environment variable names. Ollama runs locally
# and needs none.
_API_KEY_ENV_VARS: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "grok": "XAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "ollama": None,
}

SUPPORTED_PROVIDERS: tuple[str, ...] = tuple(_API_KEY_ENV_VARS)


def api_key_env_var(provider: str) -> str | None:
    """Return the environment variable that holds *provider*'s key."""
    return _API_KEY_ENV_VARS.get(provider)


@dataclass(frozen=True)
class CacheConfig:
    """Response cache sizing."""

    max_entries: int = 100
    default_ttl_s: float = 3600.0

    def __post_init__(self) -> None:
        if self.max_entries < 1:
            raise ConfigurationError(
                f"max_entries must be ≥ 1, got {self.max_entries}",
                hint="This bounds how many responses the LRU cache keeps.",
            )
        if self.default_ttl_s <= 0:
            raise ConfigurationError(
                f"default_ttl_s must be > 0, got {self.default_ttl_s}",
                hint="Disable caching with Config(enable_caching=False) instead.",
            )


@dataclass(frozen=True)
class Config:
    """Immutable configuration for building a provider.

    Provider and model are required; llmux does not guess what you want.
    API keys are auto-resolved from standard environment variables.

    Example:
        config = Config(provider="anthropic", model="claude-sonnet-4-5")
        # API key is automatically resolved from ANTHROPIC_API_KEY
    """

    provider: ProviderName
    model: str
    #: Auto-resolved from the provider's environment variable when *None*.
    api_key: str | None = None
    base_url: str | None = None
    use_mock: bool = False
    enable_caching: bool = True
    cache: CacheConfig = field(default_factory=CacheConfig)
    #: *None* picks a preset per request from its reasoning effort.
    retry: RetryPolicy | None = None
    timeout_s: float = 60.0

    def __post_init__(self) -> None:
        """Auto-resolve API key and validate configuration."""
        if self.provider not in _API_KEY_ENV_VARS:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint=f"Supported providers: {', '.join(SUPPORTED_PROVIDERS)}",
            )
        if not self.model:
            raise ConfigurationError(
                "model is required",
                hint="Pass the provider's model id, e.g. model='gpt-4.1-mini'.",
            )
        if self.timeout_s <= 0:
            raise ConfigurationError(
                f"timeout_s must be > 0, got {self.timeout_s}",
                hint="This bounds each HTTP request in seconds.",
            )

        env_var = _API_KEY_ENV_VARS[self.provider]
        if self.api_key is None and not self.use_mock and env_var is not None:
            object.__setattr__(self, "api_key", os.environ.get(env_var))

        if not self.use_mock and env_var is not None and not self.api_key:
            raise ConfigurationError(
                f"API key required for {self.provider}",
                hint=f"Set {env_var} environment variable or pass api_key=...",
            )

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, "
            f"use_mock={self.use_mock}, enable_caching={self.enable_caching})"
        )

    __repr__ = __str__
