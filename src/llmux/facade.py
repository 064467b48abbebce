"""Cache + retry composed around a raw provider, behind the provider interface."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from llmux.cache import ResponseCache
from llmux.providers.registry import ProviderRegistry
from llmux.retry import RetryHandler, policy_for_settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    import httpx

    from llmux.cache import CachedProvider
    from llmux.config import Config
    from llmux.deltas import CanonicalDelta
    from llmux.providers.base import Provider, ProviderCapabilities
    from llmux.retry import RetryObserver, RetryPolicy
    from llmux.types import ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)


class RetryingProvider:
    """Provider decorator that retries calls and stream establishment.

    With no explicit policy, each request gets a preset chosen from its
    reasoning effort.
    """

    def __init__(
        self,
        raw: Provider,
        *,
        policy: RetryPolicy | None = None,
        on_retry: RetryObserver | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.raw = raw
        self.policy = policy
        self._on_retry = on_retry
        self._sleep = sleep

    def handler_for(self, request: ProviderRequest) -> RetryHandler:
        policy = self.policy or policy_for_settings(request.settings)
        return RetryHandler(policy, on_retry=self._on_retry, sleep=self._sleep)

    @property
    def model_id(self) -> str:
        return self.raw.model_id

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.raw.capabilities

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        return await self.handler_for(request).execute(lambda: self.raw.generate_text(request))

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        return await self.handler_for(request).execute_stream(
            lambda: self.raw.stream_text(request)
        )

    async def aclose(self) -> None:
        await self.raw.aclose()


class ResilientProvider:
    """Caching and retrying provider facade.

    ``generate_text``: cache lookup, then a retried raw call on miss, then
    store. ``stream_text``: retried establishment only, never cached. Cache
    failures are logged and never replace the provider's own error.
    """

    def __init__(
        self,
        raw: Provider,
        *,
        cache: ResponseCache | None = None,
        retry_policy: RetryPolicy | None = None,
        on_retry: RetryObserver | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.raw = raw
        self.cache = cache
        self._retrying = RetryingProvider(
            raw, policy=retry_policy, on_retry=on_retry, sleep=sleep
        )
        self._inner: RetryingProvider | CachedProvider = (
            cache.wrap_provider(self._retrying) if cache is not None else self._retrying
        )

    @property
    def model_id(self) -> str:
        return self.raw.model_id

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.raw.capabilities

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        return await self._inner.generate_text(request)

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        return await self._inner.stream_text(request)

    async def aclose(self) -> None:
        await self.raw.aclose()


def build_provider(
    config: Config,
    *,
    registry: ProviderRegistry | None = None,
    http_client: httpx.AsyncClient | None = None,
    on_retry: RetryObserver | None = None,
) -> ResilientProvider:
    """Construct the raw provider for *config* and wrap it in cache + retry."""
    raw = (registry or ProviderRegistry()).create(config, http_client=http_client)
    cache = ResponseCache.from_config(config.cache) if config.enable_caching else None
    logger.debug(
        "Built %s provider for %s (caching=%s)", config.provider, config.model, cache is not None
    )
    return ResilientProvider(raw, cache=cache, retry_policy=config.retry, on_retry=on_retry)
