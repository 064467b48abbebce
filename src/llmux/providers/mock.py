"""Mock provider for testing without API calls."""

from __future__ import annotations

from typing import TYPE_CHECKING

from llmux.deltas import CanonicalDelta, guard_stream
from llmux.providers.base import ProviderCapabilities
from llmux.types import FinishReason, ProviderResponse, Role, Usage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from llmux.types import ProviderRequest


class MockProvider:
    """Echoes the last user message.

    Streams the same text word by word so streaming callers see several
    deltas before DONE.
    """

    def __init__(self, model: str = "mock-model") -> None:
        self.model = model
        self.calls = 0

    @property
    def model_id(self) -> str:
        return self.model

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            supports_tools=True,
            supports_vision=True,
            supports_streaming=True,
            supports_audio=True,
            supports_reasoning=False,
        )

    @staticmethod
    def _echo(request: ProviderRequest) -> str:
        prompt = next(
            (m.text for m in reversed(request.messages) if m.role is Role.USER and m.text),
            "",
        )
        return f"echo: {prompt[:100]}"

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        """Return a deterministic mock response."""
        self.calls += 1
        text = self._echo(request)
        return ProviderResponse(
            text=text,
            usage=Usage(input_tokens=10, output_tokens=len(text.split())),
            finish_reason=FinishReason.STOP,
        )

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        self.calls += 1
        words = self._echo(request).split(" ")

        async def _deltas() -> AsyncIterator[CanonicalDelta]:
            for i, word in enumerate(words):
                yield CanonicalDelta.text_delta(word if i == 0 else f" {word}")
            yield CanonicalDelta.done_delta(
                finish_reason=FinishReason.STOP,
                usage=Usage(input_tokens=10, output_tokens=len(words)),
            )

        return guard_stream(_deltas())

    async def aclose(self) -> None:
        return None
