"""Facade: cache and retry composed behind the provider interface."""

from __future__ import annotations

import pytest

import llmux
from llmux.cache import ResponseCache
from llmux.config import Config
from llmux.deltas import CanonicalDelta, DeltaKind, collect_stream
from llmux.errors import AuthenticationError, NetworkError, RateLimitError
from llmux.facade import ResilientProvider, RetryingProvider, build_provider
from llmux.providers import MockProvider, Provider, ProviderRegistry
from llmux.retry import RetryPolicy
from llmux.types import GenerationSettings, ProviderRequest, ProviderResponse
from tests.conftest import FakeProvider
from tests.helpers import RecordingSleep, ScriptedProvider, drain

pytestmark = pytest.mark.integration

FAST = RetryPolicy(max_attempts=3, base_delay=0.01, jitter_range=(1.0, 1.0))


# =============================================================================
# ResilientProvider
# =============================================================================


@pytest.mark.asyncio
async def test_miss_retries_then_caches_the_success() -> None:
    raw = ScriptedProvider(
        script=[RateLimitError("limited"), ProviderResponse(text="fresh")]
    )
    retries: list[int] = []
    facade = ResilientProvider(
        raw,
        cache=ResponseCache(),
        retry_policy=FAST,
        on_retry=lambda n, _d, _e: retries.append(n),
        sleep=RecordingSleep(),
    )
    request = ProviderRequest.text("Hello")

    first = await facade.generate_text(request)
    second = await facade.generate_text(request)

    assert first.text == second.text == "fresh"
    assert raw.generate_calls == 2  # one failure, one success, then a hit
    assert retries == [1]


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried_or_cached() -> None:
    raw = ScriptedProvider(
        script=[AuthenticationError("bad key", status_code=401), ProviderResponse(text="ok")]
    )
    cache = ResponseCache()
    facade = ResilientProvider(raw, cache=cache, retry_policy=FAST, sleep=RecordingSleep())
    request = ProviderRequest.text("Hello")

    with pytest.raises(AuthenticationError):
        await facade.generate_text(request)

    assert raw.generate_calls == 1
    assert len(cache) == 0
    assert (await facade.generate_text(request)).text == "ok"


@pytest.mark.asyncio
async def test_stream_establishment_is_retried_and_never_cached() -> None:
    deltas = [CanonicalDelta.text_delta("hi"), CanonicalDelta.done_delta()]
    raw = ScriptedProvider(stream_script=[NetworkError("connect failed"), deltas, deltas])
    cache = ResponseCache()
    facade = ResilientProvider(raw, cache=cache, retry_policy=FAST, sleep=RecordingSleep())
    request = ProviderRequest.text("Hello")

    first = await drain(await facade.stream_text(request))
    second = await drain(await facade.stream_text(request))

    assert [d.kind for d in first] == [DeltaKind.TEXT, DeltaKind.DONE]
    assert first == second
    assert raw.stream_calls == 3
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_without_cache_every_call_reaches_the_provider() -> None:
    raw = FakeProvider()
    facade = ResilientProvider(raw, retry_policy=FAST)
    request = ProviderRequest.text("Hello")

    await facade.generate_text(request)
    await facade.generate_text(request)

    assert raw.generate_calls == 2
    assert facade.model_id == raw.model_id
    assert facade.capabilities == raw.capabilities


@pytest.mark.asyncio
async def test_facade_satisfies_the_provider_protocol() -> None:
    facade = ResilientProvider(FakeProvider())

    assert isinstance(facade, Provider)
    await facade.aclose()
    assert facade.raw.closed is True


@pytest.mark.asyncio
async def test_policy_defaults_to_a_preset_from_reasoning_effort() -> None:
    retrying = RetryingProvider(FakeProvider())

    cheap = ProviderRequest.text("x", settings=GenerationSettings(reasoning_effort="minimal"))
    costly = ProviderRequest.text("x", settings=GenerationSettings(reasoning_effort="high"))

    assert retrying.handler_for(cheap).policy == RetryPolicy.aggressive()
    assert retrying.handler_for(costly).policy == RetryPolicy.conservative()
    assert RetryingProvider(FakeProvider(), policy=FAST).handler_for(costly).policy == FAST


# =============================================================================
# build_provider and the top-level helpers
# =============================================================================


def test_build_provider_wires_cache_from_config() -> None:
    cached = build_provider(Config(provider="openai", model="m", use_mock=True))
    uncached = build_provider(
        Config(provider="openai", model="m", use_mock=True, enable_caching=False)
    )

    assert isinstance(cached.raw, MockProvider)
    assert cached.cache is not None
    assert uncached.cache is None


def test_build_provider_uses_the_injected_registry() -> None:
    fake = FakeProvider(model="injected")
    registry = ProviderRegistry({"groq": lambda _config, _client: fake})

    facade = build_provider(Config(provider="groq", model="m", api_key="k"), registry=registry)

    assert facade.raw is fake
    assert facade.model_id == "injected"


@pytest.mark.asyncio
async def test_generate_and_stream_round_trip_through_the_mock() -> None:
    config = Config(provider="anthropic", model="mock", use_mock=True)

    response = await llmux.generate("Hello there", config=config)
    deltas = await drain(llmux.stream("Hello there", config=config))

    assert response.text == "echo: Hello there"
    assert deltas[-1].kind is DeltaKind.DONE
    assert (await collect_stream(_replay(deltas))).text == "echo: Hello there"


async def _replay(deltas: list[CanonicalDelta]):
    for delta in deltas:
        yield delta
