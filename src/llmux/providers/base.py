"""Provider protocol: the shape every backend and decorator implements."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from llmux.deltas import CanonicalDelta
    from llmux.types import ProviderRequest, ProviderResponse


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags exposed by providers."""

    supports_tools: bool = True
    supports_vision: bool = False
    supports_streaming: bool = True
    supports_audio: bool = False
    supports_reasoning: bool = False
    context_length: int | None = None


@runtime_checkable
class Provider(Protocol):
    """Minimal provider protocol: generate, stream, close."""

    @property
    def model_id(self) -> str:
        """Model identifier requests are sent to."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Feature capabilities for request validation."""
        ...

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        """Generate one complete response."""
        ...

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        """Establish a stream and return its deltas.

        Establishment failures raise here; failures after establishment arrive
        as an ERROR delta followed by DONE.
        """
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
