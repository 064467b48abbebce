"""Response cache: LRU + TTL memoization of non-streaming responses."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
import copy
from dataclasses import dataclass
import hashlib
import logging
import time
from typing import TYPE_CHECKING, Any

from llmux._singleflight import SingleFlight
from llmux.errors import ConfigurationError
from llmux.values import canonical_json

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Iterable

    from llmux.config import CacheConfig
    from llmux.deltas import CanonicalDelta
    from llmux.providers.base import Provider, ProviderCapabilities
    from llmux.types import ContentPart, Message, ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)

# Tool-bearing requests tend to depend on external state; keep them briefly.
TOOL_REQUEST_TTL_S = 300.0


def _part_identity(part: ContentPart) -> dict[str, Any]:
    if part.kind == "text":
        return {"kind": "text", "text": part.text}
    identity: dict[str, Any] = {"kind": part.kind, "mime_type": part.mime_type}
    if part.data is not None:
        identity["sha256"] = hashlib.sha256(part.data).hexdigest()
    if part.uri is not None:
        identity["uri"] = part.uri
    return identity


def _message_identity(message: Message) -> dict[str, Any]:
    return {
        "role": message.role.value,
        "channel": message.channel.value if message.channel else None,
        "parts": [_part_identity(p) for p in message.parts],
        "tool_call_id": message.tool_call_id,
        "tool_calls": [
            {"id": c.id, "name": c.name, "arguments": c.arguments.to_python()}
            for c in message.tool_calls
        ],
    }


def compute_cache_key(request: ProviderRequest, *, model_id: str | None = None) -> str:
    """Compute a deterministic key for *request*.

    Key = sha256(canonical JSON of model, messages, tool shapes, settings).
    Tool handlers and message metadata do not participate.
    """
    settings = request.settings
    document = {
        "model": model_id,
        "messages": [_message_identity(m) for m in request.messages],
        "tools": [
            {
                "name": t.name,
                "description": t.description,
                "parameters": t.parameters_schema(),
            }
            for t in request.tools
        ],
        "settings": {
            "max_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "reasoning_effort": settings.reasoning_effort,
            "stop_sequences": list(settings.stop_sequences),
            "provider_options": settings.provider_options,
        },
    }
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    """One memoized response. Owned by the cache."""

    response: ProviderResponse
    inserted_at: float
    last_accessed_at: float
    ttl_s: float
    model_id: str | None = None
    hits: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl_s


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time counters."""

    entries: int
    hits: int
    misses: int
    stores: int
    evictions: int
    expirations: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class ResponseCache:
    """LRU + TTL cache of provider responses.

    All state changes serialize through one lock; no I/O happens while it is
    held. Expiry is lazy (checked on lookup) unless ``prune_expired`` runs.
    """

    def __init__(
        self,
        max_entries: int = 100,
        default_ttl_s: float = 3600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ConfigurationError(f"max_entries must be >= 1, got {max_entries}")
        if default_ttl_s <= 0:
            raise ConfigurationError(f"default_ttl_s must be > 0, got {default_ttl_s}")
        self.max_entries = max_entries
        self.default_ttl_s = default_ttl_s
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._flights: SingleFlight[str, ProviderResponse] = SingleFlight()
        self._hits = 0
        self._misses = 0
        self._stores = 0
        self._evictions = 0
        self._expirations = 0

    @classmethod
    def from_config(cls, config: CacheConfig) -> ResponseCache:
        return cls(max_entries=config.max_entries, default_ttl_s=config.default_ttl_s)

    def __len__(self) -> int:
        return len(self._entries)

    async def get(
        self, request: ProviderRequest, *, model_id: str | None = None
    ) -> ProviderResponse | None:
        """Return a copy of the cached response, or None if absent/expired."""
        return await self.get_by_key(compute_cache_key(request, model_id=model_id))

    async def get_by_key(self, key: str) -> ProviderResponse | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return None
            entry.last_accessed_at = now
            entry.hits += 1
            self._entries.move_to_end(key)
            self._hits += 1
            response = entry.response
        logger.debug("Cache hit for %s", key[:12])
        return copy.deepcopy(response)

    async def store(
        self,
        response: ProviderResponse,
        request: ProviderRequest,
        *,
        model_id: str | None = None,
        ttl_s: float | None = None,
    ) -> None:
        """Insert or overwrite the entry for *request*."""
        key = compute_cache_key(request, model_id=model_id)
        await self.store_by_key(key, response, model_id=model_id, ttl_s=ttl_s)

    async def store_by_key(
        self,
        key: str,
        response: ProviderResponse,
        *,
        model_id: str | None = None,
        ttl_s: float | None = None,
    ) -> None:
        snapshot = copy.deepcopy(response)
        async with self._lock:
            now = self._clock()
            if key in self._entries:
                self._entries.move_to_end(key)
            elif len(self._entries) >= self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Cache evicted %s (capacity %d)", evicted[:12], self.max_entries)
            self._entries[key] = CacheEntry(
                response=snapshot,
                inserted_at=now,
                last_accessed_at=now,
                ttl_s=ttl_s if ttl_s is not None else self.default_ttl_s,
                model_id=model_id,
            )
            self._stores += 1

    async def prewarm(
        self,
        pairs: Iterable[tuple[ProviderRequest, ProviderResponse]],
        *,
        model_id: str | None = None,
        ttl_s: float | None = None,
    ) -> int:
        """Seed the cache with known request/response pairs. Returns the count stored."""
        stored = 0
        for request, response in pairs:
            await self.store(response, request, model_id=model_id, ttl_s=ttl_s)
            stored += 1
        logger.debug("Prewarmed response cache with %d entries", stored)
        return stored

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def invalidate(self, predicate: Callable[[str, CacheEntry], bool]) -> int:
        """Drop every entry for which ``predicate(key, entry)`` is true."""
        async with self._lock:
            doomed = [k for k, e in self._entries.items() if predicate(k, e)]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    async def invalidate_model(self, model_id: str) -> int:
        return await self.invalidate(lambda _k, e: e.model_id == model_id)

    async def invalidate_older_than(self, age_s: float) -> int:
        cutoff = self._clock() - age_s
        return await self.invalidate(lambda _k, e: e.inserted_at < cutoff)

    async def prune_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            doomed = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in doomed:
                del self._entries[k]
            self._expirations += len(doomed)
        return len(doomed)

    @property
    def stats(self) -> CacheStats:
        return CacheStats(
            entries=len(self._entries),
            hits=self._hits,
            misses=self._misses,
            stores=self._stores,
            evictions=self._evictions,
            expirations=self._expirations,
        )

    async def get_or_generate(
        self,
        request: ProviderRequest,
        factory: Callable[[], Awaitable[ProviderResponse]],
        *,
        model_id: str | None = None,
        ttl_s: float | None = None,
    ) -> ProviderResponse:
        """Return a cached response or produce one with single-flight.

        Caching is best-effort: key, lookup and store failures are logged and
        the call proceeds uncached. Errors from *factory* propagate unchanged.
        """
        try:
            key = compute_cache_key(request, model_id=model_id)
        except Exception as e:
            logger.warning("Response cache bypassed; request is not hashable: %s", e)
            return await factory()

        async def _get(k: str) -> ProviderResponse | None:
            try:
                return await self.get_by_key(k)
            except Exception as e:
                logger.warning("Response cache lookup failed: %s", e)
                return None

        async def _set(k: str, value: ProviderResponse) -> None:
            try:
                await self.store_by_key(k, value, model_id=model_id, ttl_s=ttl_s)
            except Exception as e:
                logger.warning("Response cache store failed: %s", e)

        return await self._flights.do(key, factory, lookup=_get, store=_set)

    def wrap_provider(
        self, raw: Provider, *, tool_ttl_s: float = TOOL_REQUEST_TTL_S
    ) -> CachedProvider:
        return CachedProvider(raw, self, tool_ttl_s=tool_ttl_s)


class CachedProvider:
    """Provider decorator that memoizes ``generate_text``.

    ``stream_text`` always calls through: a stream is a one-time sequence,
    not a replayable value.
    """

    def __init__(
        self,
        raw: Provider,
        cache: ResponseCache,
        *,
        tool_ttl_s: float = TOOL_REQUEST_TTL_S,
    ) -> None:
        self.raw = raw
        self.cache = cache
        self._tool_ttl_s = tool_ttl_s

    @property
    def model_id(self) -> str:
        return self.raw.model_id

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.raw.capabilities

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        ttl_s = self._tool_ttl_s if request.tools else None
        return await self.cache.get_or_generate(
            request,
            lambda: self.raw.generate_text(request),
            model_id=self.raw.model_id,
            ttl_s=ttl_s,
        )

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        return await self.raw.stream_text(request)

    async def aclose(self) -> None:
        await self.raw.aclose()
