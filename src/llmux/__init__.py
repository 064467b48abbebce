"""llmux: one interface over many LLM providers.

Public API:
    - generate(): Single non-streaming call through the cache + retry facade
    - stream(): Canonical deltas for a single streaming call
    - Config: Configuration dataclass
    - ResilientProvider / build_provider: The facade itself
    - ToolRegistry / Tool: Executable tools
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from llmux.cache import CachedProvider, ResponseCache, compute_cache_key
from llmux.config import CacheConfig, Config
from llmux.deltas import CanonicalDelta, DeltaKind, collect_stream
from llmux.errors import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    InvalidInputError,
    LlmuxError,
    NetworkError,
    RateLimitError,
    RealtimeConnectionError,
    ToolArgumentError,
    UnsupportedOperationError,
)
from llmux.facade import ResilientProvider, RetryingProvider, build_provider
from llmux.normalizer import Grammar, normalize
from llmux.providers import Provider, ProviderCapabilities, ProviderRegistry
from llmux.retry import RetryHandler, RetryPolicy
from llmux.tools import Tool, ToolParameter, ToolRegistry, ToolResult
from llmux.types import (
    GenerationSettings,
    Message,
    ProviderRequest,
    ProviderResponse,
    Role,
)
from llmux.values import JSONValue

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("llmux")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("llmux").addHandler(logging.NullHandler())


async def generate(
    prompt: str | ProviderRequest,
    *,
    config: Config,
    system: str | None = None,
    settings: GenerationSettings | None = None,
) -> ProviderResponse:
    """Run one prompt through a freshly built facade.

    Example:
        config = Config(provider="openai", model="gpt-4o-mini")
        response = await generate("Say hi", config=config)
        print(response.text)
    """
    request = (
        prompt
        if isinstance(prompt, ProviderRequest)
        else ProviderRequest.text(prompt, system=system, settings=settings)
    )
    provider = build_provider(config)
    try:
        return await provider.generate_text(request)
    finally:
        await provider.aclose()


async def stream(
    prompt: str | ProviderRequest,
    *,
    config: Config,
    system: str | None = None,
    settings: GenerationSettings | None = None,
) -> AsyncIterator[CanonicalDelta]:
    """Yield canonical deltas for one prompt; the last one is always DONE."""
    request = (
        prompt
        if isinstance(prompt, ProviderRequest)
        else ProviderRequest.text(prompt, system=system, settings=settings)
    )
    provider = build_provider(config)
    try:
        deltas = await provider.stream_text(request)
        async for delta in deltas:
            yield delta
    finally:
        await provider.aclose()


__all__ = [
    "APIError",
    "AuthenticationError",
    "CacheConfig",
    "CachedProvider",
    "CanonicalDelta",
    "Config",
    "ConfigurationError",
    "DeltaKind",
    "GenerationSettings",
    "Grammar",
    "InvalidInputError",
    "JSONValue",
    "LlmuxError",
    "Message",
    "NetworkError",
    "Provider",
    "ProviderCapabilities",
    "ProviderRegistry",
    "ProviderRequest",
    "ProviderResponse",
    "RateLimitError",
    "RealtimeConnectionError",
    "ResilientProvider",
    "ResponseCache",
    "RetryHandler",
    "RetryPolicy",
    "RetryingProvider",
    "Role",
    "Tool",
    "ToolArgumentError",
    "ToolParameter",
    "ToolRegistry",
    "ToolResult",
    "UnsupportedOperationError",
    "build_provider",
    "collect_stream",
    "compute_cache_key",
    "generate",
    "normalize",
    "stream",
]
