"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, a manual clock, and
automatic API test skipping. Fixtures here are autouse unless noted.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import TYPE_CHECKING

import pytest

from llmux.deltas import CanonicalDelta, guard_stream
from llmux.providers.base import ProviderCapabilities
from llmux.types import FinishReason, ProviderResponse, Role, Usage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from llmux.types import ProviderRequest

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeProvider:
    """Provider test double that answers ``ok:<last user text>``.

    Records every request it sees. Use to test decorators (cache, retry,
    facade) without real API calls.
    """

    model: str = "fake-model"
    generate_calls: int = 0
    stream_calls: int = 0
    closed: bool = False
    requests: list[ProviderRequest] = field(default_factory=list)
    _capabilities: ProviderCapabilities = field(default_factory=ProviderCapabilities)

    @property
    def model_id(self) -> str:
        return self.model

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    @staticmethod
    def _prompt(request: ProviderRequest) -> str:
        return next(
            (m.text for m in reversed(request.messages) if m.role is Role.USER),
            "",
        )

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        self.generate_calls += 1
        self.requests.append(request)
        return ProviderResponse(
            text=f"ok:{self._prompt(request)}",
            usage=Usage(input_tokens=1, output_tokens=1),
            finish_reason=FinishReason.STOP,
        )

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        self.stream_calls += 1
        self.requests.append(request)
        text = f"ok:{self._prompt(request)}"

        async def _deltas() -> AsyncIterator[CanonicalDelta]:
            yield CanonicalDelta.text_delta(text)
            yield CanonicalDelta.done_delta(finish_reason=FinishReason.STOP)

        return guard_stream(_deltas())

    async def aclose(self) -> None:
        self.closed = True


class ManualClock:
    """Deterministic time source for TTL and history tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    """A manual clock starting at t=1000 (not autouse)."""
    return ManualClock()


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================

PROVIDER_KEY_VARS = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GEMINI_API_KEY",
    "XAI_API_KEY",
    "GROQ_API_KEY",
    "MISTRAL_API_KEY",
    "OPENROUTER_API_KEY",
)


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears every provider API key variable so config resolution is explicit.
    Opt-out: @pytest.mark.api
    """
    if "api" in request.node.keywords:
        return
    for key in PROVIDER_KEY_VARS:
        monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    for name in ("httpx", "httpcore", "websockets"):
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================

# Cheapest models that still exercise tools and streaming.
OPENAI_TEST_MODEL = "gpt-4.1-nano"
ANTHROPIC_TEST_MODEL = "claude-3-5-haiku-latest"
GEMINI_TEST_MODEL = "gemini-2.5-flash-lite"


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key


@pytest.fixture
def anthropic_api_key():
    """Return ANTHROPIC_API_KEY or skip the test if unavailable."""
    key = os.getenv("ANTHROPIC_API_KEY")
    if not key:
        pytest.skip("ANTHROPIC_API_KEY not set")
    return key


@pytest.fixture
def gemini_api_key():
    """Return GEMINI_API_KEY or skip the test if unavailable."""
    key = os.getenv("GEMINI_API_KEY")
    if not key:
        pytest.skip("GEMINI_API_KEY not set")
    return key
